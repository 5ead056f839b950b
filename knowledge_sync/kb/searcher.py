"""
Semantic search over a project's persisted knowledge or code collection.

Results are ordered by descending score, ties broken by file path and then
chunk offset, so identical inputs always give identical output.  Every
result says whether the project is being re-indexed right now, in which
case it may come from a stale snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .embedder import Embedder, Similarity, cosine_similarity
from .jobs import JobController, JobState
from .registry import ProjectRecord
from .store import KINDS, KNOWLEDGE, KnowledgeStore

logger = logging.getLogger(__name__)

ADVISORY_MESSAGE = "Indexing in progress; results may be stale/incomplete."


@dataclass(frozen=True)
class ScoredResult:
    """
    A single search hit.

    Attributes
    ----------
    text:
        Chunk text.
    file_path:
        Path relative to the project root.
    score:
        Similarity between the query and the chunk.
    indexing_in_progress:
        The project's indexing job was ``running`` when the search ran.
    """

    text: str
    file_path: str
    score: float
    indexing_in_progress: bool
    project: str
    kind: str = KNOWLEDGE
    start: int = 0
    line_start: int = 0
    line_end: int = 0
    language: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "project": self.project,
            "text": self.text,
            "filePath": self.file_path,
            "score": self.score,
            "indexingInProgress": self.indexing_in_progress,
            "lineStart": self.line_start,
            "lineEnd": self.line_end,
            "language": self.language,
        }


class Searcher:
    """
    Nearest-neighbour search over :class:`KnowledgeStore` collections.

    Parameters
    ----------
    store:
        Source of persisted collections.
    controller:
        Consulted only for the ``indexing_in_progress`` flag.
    embedder:
        Embeds the query (once per search).
    similarity:
        Scoring function; cosine similarity by default.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        controller: JobController,
        embedder: Embedder,
        similarity: Similarity = cosine_similarity,
    ) -> None:
        self.store = store
        self.controller = controller
        self.embedder = embedder
        self.similarity = similarity

    def search(
        self,
        query: str,
        project: ProjectRecord,
        k: int = 5,
        kind: str = KNOWLEDGE,
        min_score: Optional[float] = None,
    ) -> list[ScoredResult]:
        """
        Return the top *k* chunks of *project*'s *kind* collection.

        Parameters
        ----------
        query:
            Natural-language query.
        project:
            Project whose collection is searched.
        k:
            Maximum number of results.
        kind:
            ``"knowledge"`` | ``"code"``
        min_score:
            Drop results scoring below this value.
        """
        if kind not in KINDS:
            raise ValueError(f"Unknown collection kind: {kind!r}")

        in_progress = self.controller.get_progress(project.name).state is JobState.RUNNING
        collection = self.store.load(project, kind)
        if not collection.records or k <= 0:
            logger.debug("[KB] Search on empty %s index for '%s'", kind, project.name)
            return []

        query_vec = self.embedder.embed(query)
        scored = []
        for record in collection.records:
            score = float(self.similarity(query_vec, record.vector))
            if min_score is not None and score < min_score:
                continue
            scored.append((score, record))

        scored.sort(key=lambda item: (-item[0], item[1].file_path, item[1].start))
        results = [
            ScoredResult(
                text=record.text,
                file_path=record.file_path,
                score=score,
                indexing_in_progress=in_progress,
                project=project.name,
                kind=kind,
                start=record.start,
                line_start=record.line_start,
                line_end=record.line_end,
                language=record.language,
            )
            for score, record in scored[:k]
        ]
        logger.debug(
            "[KB] Search '%s' in %s/%s returned %d result(s)",
            query[:50], project.name, kind, len(results),
        )
        return results
