"""
Project registry — discovers knowledge-base projects and caches the result.

Two sources are scanned:
  1. The global store (``~/.knowledge-sync/workspaces/<name>``): every
     immediate subdirectory is a ``global`` project.
  2. A bounded depth-first walk from the home directory: any directory that
     contains a ``.knowledge-sync/config.yaml`` marker is a ``local`` project.

Scanning is expensive, so :class:`ProjectRegistry` keeps the last result for
a fixed TTL (30 seconds by default) keyed by the scan options.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import yaml

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MARKER_DIR = ".knowledge-sync"
CONFIG_FILENAME = "config.yaml"
DEFAULT_TTL_SECONDS = 30.0
DEFAULT_MAX_DEPTH = 5

_STORAGE_MODES = frozenset({"global", "workspace", "both"})

# Heavy directories never worth descending into while looking for markers.
_WALK_SKIP_DIRS: frozenset[str] = frozenset({
    "node_modules", "dist", "build", "__pycache__",
    "venv", "env", "target", "vendor",
    "bin", "obj", "coverage", "out",
    "site-packages", "eggs",
    "Library", "AppData", "Applications",
    "go", "snap",
})


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProjectRecord:
    """
    An immutable snapshot of one discovered project.

    Attributes
    ----------
    name:
        Unique project key within a scan.
    root_path:
        Source tree location.  For global projects without a configured
        ``sourcePath`` this equals *data_path*.
    data_path:
        Knowledge/config storage directory.
    source:
        ``"global"`` | ``"local"``
    semantic_search_enabled:
        Whether embedding-based search is on.  Global projects default to
        on unless their config turns it off; local projects must opt in.
    """

    name: str
    root_path: str
    data_path: str
    source: str
    semantic_search_enabled: bool = False
    storage_mode: str = "global"
    knowledge_path: Optional[str] = None
    refs_path: Optional[str] = None
    tasks_path: Optional[str] = None
    linked_projects: tuple[str, ...] = ()
    model: Optional[str] = None

    @property
    def knowledge_dir(self) -> str:
        """Directory holding the persisted embedding collections."""
        return self.knowledge_path or os.path.join(self.data_path, "knowledge")


@dataclass(frozen=True)
class ScanOptions:
    """
    Options for a registry scan.  Equality decides cache hits.

    Attributes
    ----------
    exclude:
        Project name to leave out of the result.
    exclude_path:
        Root or data path to leave out of the result.
    workspace_path:
        Current workspace, used by consumers for proximity ranking.
    """

    exclude: Optional[str] = None
    exclude_path: Optional[str] = None
    workspace_path: Optional[str] = None


@dataclass(frozen=True)
class ProjectConfig:
    """Decoded contents of a project's ``config.yaml``."""

    name: Optional[str] = None
    mode: str = "global"
    source_path: Optional[str] = None
    # None when the config does not say; global projects then default to on
    semantic_search_enabled: Optional[bool] = None
    model: Optional[str] = None
    linked_projects: tuple[str, ...] = ()


@dataclass(frozen=True)
class _CacheEntry:
    projects: tuple[ProjectRecord, ...]
    options: ScanOptions
    created_at: float


# ---------------------------------------------------------------------------
# Config parsing
# ---------------------------------------------------------------------------

def parse_project_config(config_path: str) -> Optional[ProjectConfig]:
    """
    Parse a project ``config.yaml`` into a :class:`ProjectConfig`.

    Missing fields fall back to defaults (``mode`` defaults to
    ``"global"``).  Accepts both a top-level ``name`` and a nested
    ``project: {name: ...}`` block.

    Returns
    -------
    Optional[ProjectConfig]
        None if the file cannot be read or is not valid YAML.
    """
    try:
        with open(config_path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as exc:
        logger.debug("[KB] Unreadable project config %s: %s", config_path, exc)
        return None

    if data is None:
        data = {}
    if not isinstance(data, dict):
        logger.debug("[KB] Ignoring non-mapping project config %s", config_path)
        return None

    project_section = data.get("project") if isinstance(data.get("project"), dict) else {}
    name = data.get("name") or project_section.get("name")

    storage = data.get("storage") if isinstance(data.get("storage"), dict) else {}
    mode = data.get("mode") or storage.get("mode") or "global"
    if mode not in _STORAGE_MODES:
        mode = "global"

    source_path = data.get("sourcePath") or data.get("source_path")

    semantic = data.get("semanticSearch", data.get("semantic_search"))
    enabled: Optional[bool] = None
    model = None
    if isinstance(semantic, dict):
        if "enabled" in semantic:
            enabled = bool(semantic["enabled"])
        model = semantic.get("model")
    elif semantic is not None:
        enabled = bool(semantic)

    linked_raw = data.get("linked_projects") or data.get("linkedProjects") or []
    linked: list[str] = []
    if isinstance(linked_raw, list):
        for item in linked_raw:
            if item is None:
                continue
            # "name:mode" entries keep only the name
            linked.append(str(item).split(":", 1)[0].strip())

    return ProjectConfig(
        name=str(name).strip() if name else None,
        mode=mode,
        source_path=os.path.expanduser(str(source_path)) if source_path else None,
        semantic_search_enabled=enabled,
        model=str(model) if model else None,
        linked_projects=tuple(linked),
    )


def _existing_dir(path: str) -> Optional[str]:
    return path if os.path.isdir(path) else None


# ---------------------------------------------------------------------------
# Sub-scans
# ---------------------------------------------------------------------------

def scan_global_storage(workspaces_dir: str) -> list[ProjectRecord]:
    """
    List immediate subdirectories of *workspaces_dir* as global projects.

    The presence of ``knowledge/``, ``refs/`` and ``tasks/`` is recorded but
    does not gate inclusion.
    """
    projects: list[ProjectRecord] = []
    try:
        entries = sorted(os.scandir(workspaces_dir), key=lambda e: e.name)
    except OSError as exc:
        logger.debug("[KB] Global store not readable (%s): %s", workspaces_dir, exc)
        return projects

    for entry in entries:
        try:
            if not entry.is_dir():
                continue
        except OSError:
            continue

        data_path = entry.path
        config = parse_project_config(os.path.join(data_path, CONFIG_FILENAME))
        config = config or ProjectConfig()

        projects.append(ProjectRecord(
            name=config.name or entry.name,
            root_path=config.source_path or data_path,
            data_path=data_path,
            source="global",
            semantic_search_enabled=config.semantic_search_enabled is not False,
            storage_mode=config.mode,
            knowledge_path=_existing_dir(os.path.join(data_path, "knowledge")),
            refs_path=_existing_dir(os.path.join(data_path, "refs")),
            tasks_path=_existing_dir(os.path.join(data_path, "tasks")),
            linked_projects=config.linked_projects,
            model=config.model,
        ))
    return projects


def walk_local_projects(
    start_dir: str,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> list[ProjectRecord]:
    """
    Depth-first walk from *start_dir* looking for ``.knowledge-sync`` markers.

    Skips heavy directories and every dot-directory except the marker.  Does
    not descend into a matched marker directory.  Unreadable directories are
    skipped individually.

    Parameters
    ----------
    start_dir:
        Walk root, normally the user's home directory.
    max_depth:
        Deepest directory level inspected (``start_dir`` itself is depth 0).
    """
    projects: list[ProjectRecord] = []

    def _visit(directory: str, depth: int) -> None:
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as exc:
            logger.debug("[KB] Skipping unreadable directory %s: %s", directory, exc)
            return

        subdirs: list[str] = []
        for entry in entries:
            try:
                if not entry.is_dir(follow_symlinks=False):
                    continue
            except OSError:
                continue

            if entry.name == MARKER_DIR:
                record = _local_record(directory, entry.path)
                if record is not None:
                    projects.append(record)
                continue
            if entry.name.startswith(".") or entry.name in _WALK_SKIP_DIRS:
                continue
            subdirs.append(entry.path)

        if depth >= max_depth:
            return
        for sub in subdirs:
            _visit(sub, depth + 1)

    _visit(start_dir, 0)
    return projects


def _local_record(project_root: str, data_path: str) -> Optional[ProjectRecord]:
    config = parse_project_config(os.path.join(data_path, CONFIG_FILENAME))
    if config is None:
        return None
    return ProjectRecord(
        name=config.name or os.path.basename(project_root),
        root_path=project_root,
        data_path=data_path,
        source="local",
        semantic_search_enabled=bool(config.semantic_search_enabled),
        storage_mode=config.mode,
        knowledge_path=_existing_dir(os.path.join(data_path, "knowledge")),
        refs_path=_existing_dir(os.path.join(data_path, "refs")),
        tasks_path=_existing_dir(os.path.join(data_path, "tasks")),
        linked_projects=config.linked_projects,
        model=config.model,
    )


def scan_for_projects(
    options: ScanOptions,
    workspaces_dir: str,
    home_dir: str,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> list[ProjectRecord]:
    """
    Run both sub-scans and de-duplicate by ``data_path`` (global first).
    """
    seen: set[str] = set()
    projects: list[ProjectRecord] = []

    found = scan_global_storage(workspaces_dir) + walk_local_projects(home_dir, max_depth)
    for record in found:
        key = os.path.realpath(record.data_path)
        if key in seen:
            continue
        if options.exclude and record.name == options.exclude:
            continue
        if options.exclude_path and options.exclude_path in (record.root_path, record.data_path):
            continue
        seen.add(key)
        projects.append(record)

    logger.debug("[KB] Project scan found %d project(s)", len(projects))
    return projects


# ---------------------------------------------------------------------------
# Cached registry
# ---------------------------------------------------------------------------

class ProjectRegistry:
    """
    TTL-cached project discovery.

    One instance is meant to live for the whole process and be passed to
    consumers by reference.  The cache is replaced wholesale on every fresh
    scan and never mutated in place.

    Parameters
    ----------
    workspaces_dir:
        Global project store root.
    home_dir:
        Start of the bounded filesystem walk.
    ttl_seconds:
        Cache lifetime.
    max_depth:
        Walk depth ceiling.
    scanner:
        Override for the scan function (same signature as
        :func:`scan_for_projects`); used by tests to count walks.
    clock:
        Monotonic time source.
    """

    def __init__(
        self,
        workspaces_dir: str,
        home_dir: Optional[str] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_depth: int = DEFAULT_MAX_DEPTH,
        scanner: Optional[Callable[..., list[ProjectRecord]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.workspaces_dir = workspaces_dir
        self.home_dir = home_dir or os.path.expanduser("~")
        self.ttl_seconds = ttl_seconds
        self.max_depth = max_depth
        self._scanner = scanner or scan_for_projects
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Optional[_CacheEntry] = None
        self.scan_count = 0

    @classmethod
    def from_config(cls, config) -> "ProjectRegistry":
        """Build a registry from a :class:`~knowledge_sync.config.Config`."""
        return cls(
            workspaces_dir=config.WORKSPACES_DIR,
            ttl_seconds=config.REGISTRY_TTL_SECONDS,
            max_depth=config.WALK_MAX_DEPTH,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def scan(self, options: Optional[ScanOptions] = None) -> list[ProjectRecord]:
        """
        Return discovered projects, from cache when valid for *options*.
        """
        options = options or ScanOptions()
        entry = self._cache
        if (
            entry is not None
            and entry.options == options
            and self._clock() - entry.created_at < self.ttl_seconds
        ):
            return list(entry.projects)
        return self._rescan(options)

    def refresh(self, options: Optional[ScanOptions] = None) -> list[ProjectRecord]:
        """Force a fresh scan and replace the cache."""
        return self._rescan(options or ScanOptions())

    def invalidate(self) -> None:
        """Drop the cache; the next :meth:`scan` reads from disk."""
        with self._lock:
            self._cache = None

    def is_cache_valid(self) -> bool:
        """Return True if a cached result exists and is younger than the TTL."""
        entry = self._cache
        return entry is not None and self._clock() - entry.created_at < self.ttl_seconds

    def get_cached(self) -> Optional[list[ProjectRecord]]:
        """Return the cached projects without scanning, or None if invalid."""
        entry = self._cache
        if entry is None or not self.is_cache_valid():
            return None
        return list(entry.projects)

    def find(
        self,
        project: str,
        options: Optional[ScanOptions] = None,
    ) -> Optional[ProjectRecord]:
        """
        Look up a project by name, or by root/data path.

        Returns
        -------
        Optional[ProjectRecord]
            None if no scanned project matches.
        """
        projects = self.scan(options)
        for record in projects:
            if record.name == project:
                return record
        for record in projects:
            if project in (record.root_path, record.data_path):
                return record
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _rescan(self, options: ScanOptions) -> list[ProjectRecord]:
        projects = tuple(self._scanner(
            options,
            workspaces_dir=self.workspaces_dir,
            home_dir=self.home_dir,
            max_depth=self.max_depth,
        ))
        with self._lock:
            self.scan_count += 1
            self._cache = _CacheEntry(
                projects=projects,
                options=options,
                created_at=self._clock(),
            )
        return list(projects)
