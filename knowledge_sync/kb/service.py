"""
KnowledgeService — the name-based entry points used by the CLI and by
agent-facing tool handlers.

Wires together one :class:`ProjectRegistry`, one :class:`JobController`,
one :class:`KnowledgeStore` and the embedding collaborators for the whole
process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from ..config import Config
from . import drift
from .embedder import Embedder, Similarity, cosine_similarity, create_embedder
from .errors import NotFoundError, SemanticSearchDisabledError
from .indexer import IndexPipeline, IndexSummary
from .jobs import IndexingJob, JobController, ProgressReporter, StartResult
from .registry import ProjectRecord, ProjectRegistry, ScanOptions
from .searcher import Searcher, ScoredResult
from .store import KNOWLEDGE, IndexStats, KnowledgeStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexRequest:
    """Flags a background run was started with."""

    force: bool = False
    clean: bool = False


class KnowledgeService:
    """
    Facade over discovery, indexing jobs, storage, search and drift.

    Parameters
    ----------
    registry:
        Shared project registry.
    embedder:
        Embedding collaborator used for both indexing and queries.
    controller:
        Job controller; a fresh one is created when omitted.
    store:
        Knowledge store; a fresh one is created when omitted.
    config:
        Settings for chunking and search defaults.
    """

    def __init__(
        self,
        registry: ProjectRegistry,
        embedder: Embedder,
        controller: Optional[JobController] = None,
        store: Optional[KnowledgeStore] = None,
        similarity: Similarity = cosine_similarity,
        config: Optional[Config] = None,
    ) -> None:
        self.config = config or Config()
        self.registry = registry
        self.embedder = embedder
        self.controller = controller or JobController(
            stale_after=self.config.INDEX_STALE_SECONDS
        )
        self.store = store or KnowledgeStore()
        self.searcher = Searcher(self.store, self.controller, embedder, similarity)
        self.last_summaries: dict[str, IndexSummary] = {}

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> "KnowledgeService":
        """Build a service with the registry and embedder *config* selects."""
        config = config or Config.load()
        return cls(
            registry=ProjectRegistry.from_config(config),
            embedder=create_embedder(config),
            config=config,
        )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def scan(self, options: Optional[ScanOptions] = None) -> list[ProjectRecord]:
        return self.registry.scan(options)

    def resolve(self, project: str) -> ProjectRecord:
        """
        Resolve *project* (name or root path) to a record.

        Raises
        ------
        NotFoundError
            If no scanned project matches.
        """
        record = self.registry.find(project)
        if record is None:
            # The project may have been created since the cached scan
            self.registry.invalidate()
            record = self.registry.find(project)
        if record is None:
            raise NotFoundError(project)
        return record

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def start_indexing(
        self,
        project: str,
        force: bool = False,
        clean: bool = False,
        running_version: Optional[str] = None,
    ) -> StartResult:
        """
        Start a background index build for *project* and return at once.

        When *running_version* is given and the project's synced assets
        were recorded under a different version, the run is upgraded to a
        clean rebuild.

        Raises
        ------
        NotFoundError
            Unknown project.
        SemanticSearchDisabledError
            Semantic search is off for the project.
        """
        record = self.resolve(project)
        if not record.semantic_search_enabled:
            raise SemanticSearchDisabledError(record.name)

        if running_version is not None and not clean:
            manifest = drift.load_manifest(record.data_path)
            if manifest is not None and manifest.version != running_version:
                logger.info(
                    "[KB] '%s' synced at %s, running %s: forcing clean rebuild",
                    record.name, manifest.version, running_version,
                )
                clean = True

        request = IndexRequest(force=force, clean=clean)
        pipeline = IndexPipeline.from_config(record, self.store, self.embedder, self.config)

        def _runner(reporter: ProgressReporter) -> None:
            summary = pipeline.run(reporter, force=request.force, clean=request.clean)
            self.last_summaries[record.name] = summary

        return self.controller.start(record.name, _runner)

    def _job_key(self, project: str) -> str:
        """Jobs are keyed by project name; map a root path to its name."""
        record = self.registry.find(project)
        return record.name if record is not None else project

    def get_progress(self, project: str) -> IndexingJob:
        """Pure read of the job state; ``idle`` if never started."""
        return self.controller.get_progress(self._job_key(project))

    def wait(self, project: str, timeout: Optional[float] = None) -> IndexingJob:
        return self.controller.wait(self._job_key(project), timeout)

    # ------------------------------------------------------------------
    # Search / stats
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        project: str,
        k: Optional[int] = None,
        kind: str = KNOWLEDGE,
        min_score: Optional[float] = None,
    ) -> list[ScoredResult]:
        record = self.resolve(project)
        top_k = self.config.SEARCH_TOP_K if k is None else k
        return self.searcher.search(query, record, k=top_k, kind=kind, min_score=min_score)

    def stats(self, project: str) -> IndexStats:
        return self.store.stats(self.resolve(project))

    # ------------------------------------------------------------------
    # Drift / sync
    # ------------------------------------------------------------------

    def check_drift(
        self,
        data_path: str,
        last_synced_version: Optional[str],
        running_version: str,
    ) -> drift.DriftReport:
        return drift.check_drift(data_path, last_synced_version, running_version)

    def sync_bundle(
        self,
        bundle_dir: str,
        data_path: str,
        running_version: str,
        asset_dirs: Iterable[str] = drift.DEFAULT_ASSET_DIRS,
    ) -> drift.SyncResult:
        result = drift.sync_bundle(bundle_dir, data_path, running_version, asset_dirs)
        # A synced data dir may hold new project configs
        self.registry.invalidate()
        return result
