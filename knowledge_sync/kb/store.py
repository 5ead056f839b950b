"""
JSON-backed embedding store for the Knowledge Base.

Each project keeps two independent collections in its knowledge directory:

  - ``embeddings.json``       prose/document chunks ("knowledge")
  - ``code-embeddings.json``  source chunks with line ranges ("code")

Writes go to a temporary file in the same directory followed by
``os.replace``, so a concurrent reader always sees the last complete file.
Parsed collections are cached and only re-read when the backing file's
modification time (or size) changes.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Optional

from .registry import ProjectRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

INDEX_VERSION = "1.0.0"

KNOWLEDGE = "knowledge"
CODE = "code"
KINDS = (KNOWLEDGE, CODE)

_FILENAMES = {
    KNOWLEDGE: "embeddings.json",
    CODE: "code-embeddings.json",
}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class ChunkRecord:
    """
    One embedded chunk of a file.

    ``start``/``end`` are character offsets into the file text;
    ``line_start``/``line_end`` are 1-based and inclusive.  ``language`` is
    only set for code records.
    """

    id: str
    file_path: str
    start: int
    end: int
    line_start: int
    line_end: int
    text: str
    vector: list[float]
    language: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ChunkRecord":
        return cls(
            id=str(data.get("id", "")),
            file_path=str(data.get("file_path", "")),
            start=int(data.get("start", 0)),
            end=int(data.get("end", 0)),
            line_start=int(data.get("line_start", 0)),
            line_end=int(data.get("line_end", 0)),
            text=str(data.get("text", "")),
            vector=[float(v) for v in data.get("vector", [])],
            language=data.get("language"),
        )


@dataclass
class FileMeta:
    """Per-file bookkeeping used to skip unchanged files on re-index."""

    mtime: float
    chunk_count: int


@dataclass
class Collection:
    """A parsed persisted collection."""

    kind: str
    records: list[ChunkRecord] = field(default_factory=list)
    files: dict[str, FileMeta] = field(default_factory=dict)
    version: str = INDEX_VERSION
    model: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class IndexStats:
    """Cheap summary of a project's persisted collections."""

    knowledge_count: int = 0
    code_count: int = 0
    last_indexed: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def write_json_atomic(path: str, data: Any) -> None:
    """
    Serialise *data* to *path* via a temp file and ``os.replace``.

    Raises
    ------
    OSError
        If the directory cannot be created or the write fails.  The
        temp file is removed on failure.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _file_signature(path: str) -> Optional[tuple[int, int]]:
    """Return ``(mtime_ns, size)`` for *path*, or None if it does not exist."""
    try:
        st = os.stat(path)
    except OSError:
        return None
    return (st.st_mtime_ns, st.st_size)


def _iso_from_ns(mtime_ns: int) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(mtime_ns / 1e9))


# ---------------------------------------------------------------------------
# KnowledgeStore
# ---------------------------------------------------------------------------

class KnowledgeStore:
    """
    Persists and serves the ``knowledge`` and ``code`` collections of
    every project.

    A single instance is shared by the indexing pipeline (writer) and the
    searcher (reader).  The parse cache and the stats cache are both keyed
    by backing-file signature, never by age.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._collections: dict[str, tuple[tuple[int, int], Collection]] = {}
        self._stats: dict[str, tuple[tuple, IndexStats]] = {}
        self.parse_count = 0

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @staticmethod
    def index_path(project: ProjectRecord, kind: str) -> str:
        """Return the backing file path for *kind* of *project*."""
        if kind not in _FILENAMES:
            raise ValueError(f"Unknown collection kind: {kind!r}")
        return os.path.join(project.knowledge_dir, _FILENAMES[kind])

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def persist(
        self,
        project: ProjectRecord,
        kind: str,
        records: Iterable[ChunkRecord],
        files: Optional[dict[str, FileMeta]] = None,
        model: Optional[str] = None,
    ) -> str:
        """
        Overwrite the persisted *kind* collection of *project* atomically.

        Returns
        -------
        str
            The path written.
        """
        path = self.index_path(project, kind)
        records = list(records)
        payload = {
            "version": INDEX_VERSION,
            "kind": kind,
            "model": model,
            "updated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "files": {p: asdict(m) for p, m in sorted((files or {}).items())},
            "records": [asdict(r) for r in records],
        }
        write_json_atomic(path, payload)
        logger.info(
            "[KB] Persisted %d %s record(s) for '%s' to %s",
            len(records), kind, project.name, path,
        )
        return path

    def delete(self, project: ProjectRecord, kinds: Iterable[str] = KINDS) -> None:
        """Remove the persisted collections of *project* (clean rebuild)."""
        for kind in kinds:
            path = self.index_path(project, kind)
            try:
                os.remove(path)
                logger.info("[KB] Removed %s index for '%s'", kind, project.name)
            except FileNotFoundError:
                pass
            with self._lock:
                self._collections.pop(path, None)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def load(self, project: ProjectRecord, kind: str) -> Collection:
        """
        Return the persisted *kind* collection of *project*.

        Re-parses the backing file only when its signature changed since
        the last load.  A missing or corrupt file yields an empty
        collection.
        """
        path = self.index_path(project, kind)
        signature = _file_signature(path)
        if signature is None:
            return Collection(kind=kind)

        with self._lock:
            cached = self._collections.get(path)
        if cached is not None and cached[0] == signature:
            return cached[1]

        collection = self._parse(path, kind)
        with self._lock:
            self._collections[path] = (signature, collection)
        return collection

    def stats(self, project: ProjectRecord) -> IndexStats:
        """
        Return record counts and last-indexed time for *project*.

        ``last_indexed`` is the newest backing-file mtime.  The summary is
        only recomputed when either file's signature changes.
        """
        paths = [self.index_path(project, kind) for kind in KINDS]
        signatures = tuple(_file_signature(p) for p in paths)

        key = project.knowledge_dir
        with self._lock:
            cached = self._stats.get(key)
        if cached is not None and cached[0] == signatures:
            return cached[1]

        counts = [
            len(self.load(project, kind).records) if sig is not None else 0
            for kind, sig in zip(KINDS, signatures)
        ]
        mtimes = [sig[0] for sig in signatures if sig is not None]
        result = IndexStats(
            knowledge_count=counts[0],
            code_count=counts[1],
            last_indexed=_iso_from_ns(max(mtimes)) if mtimes else None,
        )
        with self._lock:
            self._stats[key] = (signatures, result)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _parse(self, path: str, kind: str) -> Collection:
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("[KB] Failed to load index %s, treating as empty: %s", path, exc)
            return Collection(kind=kind)

        with self._lock:
            self.parse_count += 1

        files: dict[str, FileMeta] = {}
        for rel_path, meta in (data.get("files") or {}).items():
            try:
                files[rel_path] = FileMeta(
                    mtime=float(meta.get("mtime", 0.0)),
                    chunk_count=int(meta.get("chunk_count", 0)),
                )
            except (AttributeError, TypeError, ValueError):
                continue

        records = []
        for raw in data.get("records") or []:
            try:
                records.append(ChunkRecord.from_dict(raw))
            except (AttributeError, TypeError, ValueError):
                continue

        logger.debug("[KB] Loaded %d record(s) from %s", len(records), path)
        return Collection(
            kind=kind,
            records=records,
            files=files,
            version=str(data.get("version", INDEX_VERSION)),
            model=data.get("model"),
            updated_at=data.get("updated_at"),
        )
