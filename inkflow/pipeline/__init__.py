"""Article generation: section pipeline and document completion."""

from .completion import DocumentScheduler, WorkflowCompletionChecker
from .sections import DocumentResult, Researcher, SectionPipeline, Writer

__all__ = [
    "DocumentResult",
    "DocumentScheduler",
    "Researcher",
    "SectionPipeline",
    "WorkflowCompletionChecker",
    "Writer",
]
