"""
Exception taxonomy for the Knowledge Base.

``already_running`` is not an exception: it is an expected
outcome of :meth:`JobController.start` and is reported as a status value.
"""

from __future__ import annotations


class KBError(Exception):
    """Base class for all Knowledge Base errors."""


class NotFoundError(KBError, LookupError):
    """Raised when a project name or path cannot be resolved."""

    def __init__(self, project: str) -> None:
        super().__init__(f"Project '{project}' not found")
        self.project = project


class SemanticSearchDisabledError(KBError):
    """Raised when indexing is requested for a project with semantic search off."""

    def __init__(self, project: str) -> None:
        super().__init__(f"Semantic search is not enabled for project '{project}'")
        self.project = project


class PipelineError(KBError):
    """
    A failure inside the background indexing pipeline.

    Captured into :attr:`IndexingJob.error`; never raised across the
    thread boundary to a caller of ``start_indexing``.
    """
