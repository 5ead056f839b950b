"""
knowledge_sync — project knowledge discovery, background indexing and
semantic search.

Public API for library usage::

    from knowledge_sync import KnowledgeService

    service = KnowledgeService.from_config()
    service.start_indexing("my-project")
    results = service.search("how are retries configured?", "my-project")
"""

__version__ = "0.1.0"

from .kb.service import KnowledgeService

__all__ = ["KnowledgeService", "__version__"]
