"""
Indexer — the scan/chunk/embed/persist pipeline run by background jobs.

  1. Walk the project root (respecting skip directories and .gitignore)
  2. Drop records for files that disappeared
  3. Re-chunk and re-embed files whose mtime changed (or every file when
     ``force``), keeping records of unchanged files
  4. Persist the ``knowledge`` and ``code`` collections atomically

Progress is reported per file through a
:class:`~knowledge_sync.kb.jobs.ProgressReporter`.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional

from .chunker import (
    DEFAULT_CHUNK_OVERLAP, DEFAULT_CHUNK_SIZE,
    DEFAULT_CODE_LINES, DEFAULT_CODE_OVERLAP,
    chunk_lines, chunk_text,
)
from .embedder import Embedder
from .errors import PipelineError
from .registry import ProjectRecord
from .store import CODE, KNOWLEDGE, ChunkRecord, FileMeta, KnowledgeStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Directory / file inclusion rules
# ---------------------------------------------------------------------------

SKIP_DIRS: frozenset[str] = frozenset({
    "node_modules", "dist", "build", "__pycache__",
    ".git", "vendor", ".knowledge-sync",
    ".venv", "venv", "env", ".env",
    ".tox", ".mypy_cache", ".pytest_cache",
    "target",           # Rust/Java build output
    "bin", "obj",       # C# build output
    "coverage",
    ".next", ".nuxt",   # JS frameworks
    "out", ".output",
    "eggs", ".eggs",
    ".cache",
})

CODE_EXTENSIONS: dict[str, str] = {
    ".ts": "typescript", ".tsx": "typescript",
    ".js": "javascript", ".jsx": "javascript",
    ".mjs": "javascript", ".cjs": "javascript",
    ".py": "python", ".pyw": "python",
    ".go": "go",
    ".rs": "rust",
    ".java": "java", ".kt": "kotlin", ".kts": "kotlin",
    ".c": "c", ".h": "c",
    ".cpp": "cpp", ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".sh": "shell", ".bash": "shell", ".zsh": "shell",
    ".sql": "sql",
}

INDEXABLE_EXTENSIONS: frozenset[str] = frozenset(CODE_EXTENSIONS) | frozenset({
    ".md", ".mdx", ".txt", ".rst",
    ".json", ".yaml", ".yml", ".toml",
    ".html", ".css", ".scss", ".sass", ".less",
})


def _load_gitignore_patterns(project_root: str) -> list[str]:
    """Read .gitignore from *project_root* and return glob patterns."""
    gi_path = os.path.join(project_root, ".gitignore")
    patterns: list[str] = []
    if not os.path.exists(gi_path):
        return patterns
    try:
        with open(gi_path, encoding="utf-8", errors="replace") as fh:
            for line in fh:
                line = line.strip()
                if line and not line.startswith("#") and not line.startswith("!"):
                    patterns.append(line.rstrip("/"))
    except OSError as exc:
        logger.debug("[KB] Could not read %s: %s", gi_path, exc)
    return patterns


def _is_ignored(path: str, gitignore_patterns: list[str]) -> bool:
    """Return True if *path* matches any gitignore pattern."""
    name = os.path.basename(path)
    rel = path.replace(os.sep, "/")
    for pattern in gitignore_patterns:
        if fnmatch.fnmatch(name, pattern):
            return True
        if fnmatch.fnmatch(rel, pattern.lstrip("/")):
            return True
    return False


def walk_indexable_files(
    project_root: str,
    max_file_bytes: Optional[int] = None,
    exclude_dirs: Iterable[str] = (),
) -> list[str]:
    """
    Walk *project_root* and return ``/``-separated relative paths of all
    indexable files, sorted.

    Skips excluded directories, dot-directories, dot-files, gitignore
    matches, the absolute directories in *exclude_dirs* and files above
    *max_file_bytes*.
    """
    gi_patterns = _load_gitignore_patterns(project_root)
    excluded = {os.path.realpath(d) for d in exclude_dirs}
    results: list[str] = []

    def _on_error(exc: OSError) -> None:
        logger.debug("[KB] Skipping unreadable path during walk: %s", exc)

    for dirpath, dirnames, filenames in os.walk(project_root, topdown=True, onerror=_on_error):
        # Prune excluded directories in-place (modifies the walk)
        dirnames[:] = sorted(
            d for d in dirnames
            if d not in SKIP_DIRS
            and not d.startswith(".")
            and not _is_ignored(os.path.relpath(os.path.join(dirpath, d), project_root),
                                gi_patterns)
            and os.path.realpath(os.path.join(dirpath, d)) not in excluded
        )

        for fname in filenames:
            if fname.startswith("."):
                continue
            ext = os.path.splitext(fname)[1].lower()
            if ext not in INDEXABLE_EXTENSIONS:
                continue
            abs_path = os.path.join(dirpath, fname)
            rel_path = os.path.relpath(abs_path, project_root)
            if _is_ignored(rel_path, gi_patterns):
                continue
            if max_file_bytes is not None:
                try:
                    if os.path.getsize(abs_path) > max_file_bytes:
                        logger.debug("[KB] Skipping large file %s", rel_path)
                        continue
                except OSError:
                    continue
            results.append(rel_path.replace(os.sep, "/"))

    return sorted(results)


def language_for(path: str) -> Optional[str]:
    """Return the code language for *path*, or None for non-code files."""
    return CODE_EXTENSIONS.get(os.path.splitext(path)[1].lower())


def make_chunk_id(kind: str, file_path: str, start: int) -> str:
    """Deterministic UUID for a chunk so re-indexing is idempotent."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{kind}:{file_path}:{start}"))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass
class IndexSummary:
    """What a pipeline run did."""

    files_total: int = 0
    files_indexed: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    knowledge_chunks: int = 0
    code_chunks: int = 0
    elapsed_seconds: float = 0.0


class IndexPipeline:
    """
    Builds and persists the embedding collections of one project.

    Parameters
    ----------
    project:
        Project to index; ``root_path`` is scanned.
    store:
        Destination store.
    embedder:
        Embedding collaborator, called once per chunk.
    """

    def __init__(
        self,
        project: ProjectRecord,
        store: KnowledgeStore,
        embedder: Embedder,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
        code_chunk_lines: int = DEFAULT_CODE_LINES,
        code_chunk_overlap: int = DEFAULT_CODE_OVERLAP,
        max_file_bytes: Optional[int] = None,
    ) -> None:
        self.project = project
        self.store = store
        self.embedder = embedder
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.code_chunk_lines = code_chunk_lines
        self.code_chunk_overlap = code_chunk_overlap
        self.max_file_bytes = max_file_bytes

    @classmethod
    def from_config(cls, project, store, embedder, config) -> "IndexPipeline":
        return cls(
            project, store, embedder,
            chunk_size=config.CHUNK_SIZE,
            chunk_overlap=config.CHUNK_OVERLAP,
            code_chunk_lines=config.CODE_CHUNK_LINES,
            code_chunk_overlap=config.CODE_CHUNK_OVERLAP,
            max_file_bytes=config.MAX_FILE_BYTES,
        )

    def run(self, reporter=None, force: bool = False, clean: bool = False) -> IndexSummary:
        """
        Execute the full pipeline.

        Parameters
        ----------
        reporter:
            Optional :class:`~knowledge_sync.kb.jobs.ProgressReporter`.
        force:
            Re-embed every file even if its mtime is unchanged.
        clean:
            Delete the persisted collections before rebuilding.

        Raises
        ------
        PipelineError
            If the project root is missing, embedding fails, or the
            collections cannot be persisted.
        """
        start_time = time.time()
        root = self.project.root_path
        if not os.path.isdir(root):
            raise PipelineError(f"Project root not found: {root}")

        if clean:
            logger.info("[KB] Cleaning knowledge index for '%s'", self.project.name)
            self.store.delete(self.project)

        # The data dir of a global project can be its own root
        files = walk_indexable_files(
            root, self.max_file_bytes, exclude_dirs=[self.project.knowledge_dir],
        )
        summary = IndexSummary(files_total=len(files))
        if reporter is not None:
            reporter.update(files_total=len(files), files_processed=0)

        previous = {
            kind: self.store.load(self.project, kind) for kind in (KNOWLEDGE, CODE)
        }
        records: dict[str, list[ChunkRecord]] = {KNOWLEDGE: [], CODE: []}
        metas: dict[str, dict[str, FileMeta]] = {KNOWLEDGE: {}, CODE: {}}
        by_file = {
            kind: _group_by_file(previous[kind].records) for kind in (KNOWLEDGE, CODE)
        }

        for idx, rel_path in enumerate(files):
            if reporter is not None:
                reporter.update(current_file=rel_path)
            abs_path = os.path.join(root, rel_path)
            try:
                mtime = os.path.getmtime(abs_path)
            except OSError as exc:
                logger.warning("[KB] Cannot stat %s: %s", rel_path, exc)
                summary.files_failed += 1
                self._report_done(reporter, idx)
                continue

            language = language_for(rel_path)
            kinds = (KNOWLEDGE, CODE) if language else (KNOWLEDGE,)

            if not force and all(
                _unchanged(previous[kind].files.get(rel_path), mtime) for kind in kinds
            ):
                for kind in kinds:
                    records[kind].extend(by_file[kind].get(rel_path, []))
                    metas[kind][rel_path] = previous[kind].files[rel_path]
                summary.files_skipped += 1
                self._report_done(reporter, idx)
                continue

            try:
                with open(abs_path, encoding="utf-8") as fh:
                    content = fh.read()
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("[KB] Failed to read %s: %s", rel_path, exc)
                summary.files_failed += 1
                self._report_done(reporter, idx)
                continue

            knowledge = self._embed_chunks(
                KNOWLEDGE, rel_path, None,
                chunk_text(content, self.chunk_size, self.chunk_overlap),
            )
            records[KNOWLEDGE].extend(knowledge)
            metas[KNOWLEDGE][rel_path] = FileMeta(mtime=mtime, chunk_count=len(knowledge))

            if language:
                code = self._embed_chunks(
                    CODE, rel_path, language,
                    chunk_lines(content, self.code_chunk_lines, self.code_chunk_overlap),
                )
                records[CODE].extend(code)
                metas[CODE][rel_path] = FileMeta(mtime=mtime, chunk_count=len(code))

            summary.files_indexed += 1
            self._report_done(reporter, idx)

        for kind in (KNOWLEDGE, CODE):
            try:
                self.store.persist(
                    self.project, kind, records[kind], metas[kind],
                    model=getattr(self.embedder, "model", None) or self.project.model,
                )
            except OSError as exc:
                raise PipelineError(f"Failed to persist {kind} index: {exc}") from exc

        summary.knowledge_chunks = len(records[KNOWLEDGE])
        summary.code_chunks = len(records[CODE])
        summary.elapsed_seconds = round(time.time() - start_time, 2)
        logger.info(
            "[KB] %s: indexed %d file(s), skipped %d unchanged, %d failed. "
            "Knowledge: %d chunks. Code: %d chunks. (%.1fs)",
            self.project.name, summary.files_indexed, summary.files_skipped,
            summary.files_failed, summary.knowledge_chunks, summary.code_chunks,
            summary.elapsed_seconds,
        )
        return summary

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _report_done(reporter, idx: int) -> None:
        if reporter is not None:
            reporter.update(files_processed=idx + 1)

    def _embed_chunks(self, kind, rel_path, language, chunks) -> list[ChunkRecord]:
        out: list[ChunkRecord] = []
        for chunk in chunks:
            try:
                vector = list(self.embedder.embed(chunk.text))
            except Exception as exc:
                raise PipelineError(f"Embedding failed for {rel_path}: {exc}") from exc
            out.append(ChunkRecord(
                id=make_chunk_id(kind, rel_path, chunk.start),
                file_path=rel_path,
                start=chunk.start,
                end=chunk.end,
                line_start=chunk.line_start,
                line_end=chunk.line_end,
                text=chunk.text,
                vector=vector,
                language=language,
            ))
        return out


def _group_by_file(records: list[ChunkRecord]) -> dict[str, list[ChunkRecord]]:
    grouped: dict[str, list[ChunkRecord]] = {}
    for record in records:
        grouped.setdefault(record.file_path, []).append(record)
    return grouped


def _unchanged(meta: Optional[FileMeta], mtime: float) -> bool:
    return meta is not None and meta.mtime == mtime
