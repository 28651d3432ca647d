"""Persistence layer for inkflow workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import InkflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    ApplyOutcome,
    ApprovalDecision,
    ApprovalRecord,
    ApprovalType,
    Document,
    DocumentStatus,
    Section,
    SectionStatus,
    StepArtifact,
    StepEffects,
    UsageRecord,
    WorkflowInstance,
)
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[InkflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The backend is selected from ``database_url``, which can be passed
    explicitly, set through ``INKFLOW_DATABASE_URL`` or ``DATABASE_URL``, or
    come from the loaded configuration. Without a database an in-memory
    repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("INKFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteWorkflowRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresWorkflowRepository

        _repository_instance = PostgresWorkflowRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "ApplyOutcome",
    "ApprovalDecision",
    "ApprovalRecord",
    "ApprovalType",
    "Document",
    "DocumentStatus",
    "InMemoryWorkflowRepository",
    "SQLiteWorkflowRepository",
    "Section",
    "SectionStatus",
    "StepArtifact",
    "StepEffects",
    "UsageRecord",
    "WorkflowInstance",
    "WorkflowRepository",
    "get_repository",
]
