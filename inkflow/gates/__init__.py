"""Prerequisite gates evaluated before a step may start."""

from .base import (
    Gate,
    GateAuditSink,
    GateResult,
    GateStatus,
    LoggingGateAuditSink,
    validate_all,
)
from .validators import (
    CompetitorGate,
    LongtailClusteringGate,
    SeedApprovalGate,
    SubtopicApprovalGate,
)

GATE_CLASSES = {
    gate.name: gate
    for gate in (
        CompetitorGate,
        SeedApprovalGate,
        LongtailClusteringGate,
        SubtopicApprovalGate,
    )
}

__all__ = [
    "CompetitorGate",
    "GATE_CLASSES",
    "Gate",
    "GateAuditSink",
    "GateResult",
    "GateStatus",
    "LoggingGateAuditSink",
    "LongtailClusteringGate",
    "SeedApprovalGate",
    "SubtopicApprovalGate",
    "validate_all",
]
