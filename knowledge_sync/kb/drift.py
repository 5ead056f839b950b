"""
Drift detection for synced asset trees (templates, prompts, docs).

After every sync a manifest of SHA-256 content hashes is written next to
the synced files together with the version that was synced.  A later
:func:`check_drift` re-hashes the same files to spot local edits
("content" drift) and compares the recorded version with the running
release ("version" drift).  Both signals may be present at once.

:func:`sync_bundle` applies an upstream bundle and always backs up locally
modified files before overwriting them.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .store import write_json_atomic

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = ".knowledge-sync-manifest.json"
BACKUP_DIRNAME = ".backups"
DEFAULT_ASSET_DIRS = ("templates", "prompts", "docs")

_HASH_BLOCK_SIZE = 65536


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ManifestEntry:
    """Hash and mtime of one synced file."""

    hash: str
    mtime: float


@dataclass
class DriftManifest:
    """Relative path → content hash, plus the synced version tag."""

    version: Optional[str] = None
    files: dict[str, ManifestEntry] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "files": {
                path: {"hash": e.hash, "mtime": e.mtime}
                for path, e in sorted(self.files.items())
            },
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DriftManifest":
        files: dict[str, ManifestEntry] = {}
        for path, entry in (data.get("files") or {}).items():
            if isinstance(entry, dict) and "hash" in entry:
                files[path] = ManifestEntry(
                    hash=str(entry["hash"]),
                    mtime=float(entry.get("mtime", 0.0)),
                )
        return cls(version=data.get("version"), files=files)


@dataclass
class DriftReport:
    """
    Result of :func:`check_drift`.

    Attributes
    ----------
    version_drift:
        The last synced version differs from the running version.
    modified_files:
        Manifest paths whose current hash differs from the recorded one.
    deleted_files:
        Manifest paths that no longer exist.
    current_version:
        Last synced version (``"0.0.0"`` when never synced).
    running_version:
        Version of the upstream bundle currently running.
    update_available:
        The running version is semver-newer than the synced one.
    """

    version_drift: bool
    modified_files: list[str]
    deleted_files: list[str]
    current_version: str
    running_version: str
    update_available: bool = False

    @property
    def content_drift(self) -> bool:
        return bool(self.modified_files or self.deleted_files)

    @property
    def has_drift(self) -> bool:
        return self.version_drift or self.content_drift

    @property
    def kinds(self) -> tuple[str, ...]:
        """Every drift signal present, e.g. ``("version", "content")``."""
        out = []
        if self.version_drift:
            out.append("version")
        if self.content_drift:
            out.append("content")
        return tuple(out)

    @property
    def type(self) -> str:
        """``"version"`` | ``"content"`` | ``"none"``; version wins when both."""
        kinds = self.kinds
        return kinds[0] if kinds else "none"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "kinds": list(self.kinds),
            "hasDrift": self.has_drift,
            "modifiedFiles": list(self.modified_files),
            "deletedFiles": list(self.deleted_files),
            "version": {
                "current": self.current_version,
                "running": self.running_version,
            },
            "updateAvailable": self.update_available,
        }


@dataclass
class SyncResult:
    """Summary of a :func:`sync_bundle` run."""

    version: str
    files_copied: int = 0
    backed_up: list[str] = field(default_factory=list)
    backup_dir: Optional[str] = None


# ---------------------------------------------------------------------------
# Hash / version helpers
# ---------------------------------------------------------------------------

def compute_file_hash(path: str) -> str:
    """Return the SHA-256 hex digest of *path*'s contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(_HASH_BLOCK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def parse_semver(version: str) -> tuple[int, ...]:
    """Parse a semver string like '1.2.3' into a comparable tuple."""
    parts = version.lstrip("v").split("-", 1)[0].split(".")
    result = []
    for p in parts:
        try:
            result.append(int(p))
        except ValueError:
            result.append(0)
    return tuple(result)


def _to_rel(path: str) -> str:
    return path.replace(os.sep, "/")


# ---------------------------------------------------------------------------
# Manifest persistence
# ---------------------------------------------------------------------------

def manifest_path(data_path: str) -> str:
    return os.path.join(data_path, MANIFEST_FILENAME)


def load_manifest(data_path: str) -> Optional[DriftManifest]:
    """
    Load the saved manifest for *data_path*.

    Returns None when the manifest is missing or unreadable; callers treat
    that as a no-drift baseline.
    """
    path = manifest_path(data_path)
    if not os.path.isfile(path):
        return None
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("[KB] Ignoring unreadable drift manifest %s: %s", path, exc)
        return None
    if not isinstance(data, dict):
        return None
    return DriftManifest.from_dict(data)


def save_manifest(data_path: str, manifest: DriftManifest) -> str:
    """Write *manifest* for *data_path* atomically and return its path."""
    path = manifest_path(data_path)
    write_json_atomic(path, manifest.to_dict())
    return path


def generate_manifest(
    data_path: str,
    relative_files: Iterable[str],
    version: Optional[str] = None,
) -> DriftManifest:
    """
    Hash every listed file under *data_path*.

    Files that do not exist are left out of the manifest.
    """
    manifest = DriftManifest(version=version)
    for rel_path in relative_files:
        full_path = os.path.join(data_path, rel_path)
        if not os.path.isfile(full_path):
            continue
        manifest.files[_to_rel(rel_path)] = ManifestEntry(
            hash=compute_file_hash(full_path),
            mtime=os.path.getmtime(full_path),
        )
    return manifest


def list_asset_files(
    root: str,
    asset_dirs: Iterable[str] = DEFAULT_ASSET_DIRS,
) -> list[str]:
    """
    Return every regular file under ``root/<asset_dir>`` as sorted
    ``/``-separated paths relative to *root*.
    """
    results: list[str] = []
    for asset_dir in asset_dirs:
        base = os.path.join(root, asset_dir)
        if not os.path.isdir(base):
            continue
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames.sort()
            for fname in filenames:
                abs_path = os.path.join(dirpath, fname)
                if os.path.isfile(abs_path):
                    results.append(_to_rel(os.path.relpath(abs_path, root)))
    return sorted(results)


# ---------------------------------------------------------------------------
# Drift checks
# ---------------------------------------------------------------------------

def detect_file_changes(data_path: str) -> tuple[list[str], list[str]]:
    """
    Re-hash every manifest path and return ``(modified, deleted)``.

    A missing manifest yields two empty lists.
    """
    manifest = load_manifest(data_path)
    if manifest is None:
        return [], []

    modified: list[str] = []
    deleted: list[str] = []
    for rel_path, entry in sorted(manifest.files.items()):
        full_path = os.path.join(data_path, rel_path)
        if not os.path.isfile(full_path):
            deleted.append(rel_path)
            continue
        try:
            current = compute_file_hash(full_path)
        except OSError as exc:
            logger.debug("[KB] Could not hash %s: %s", full_path, exc)
            modified.append(rel_path)
            continue
        if current != entry.hash:
            modified.append(rel_path)
    return modified, deleted


def check_drift(
    data_path: str,
    last_synced_version: Optional[str],
    running_version: str,
) -> DriftReport:
    """
    Compare the synced tree at *data_path* with its saved manifest and the
    running release.

    Parameters
    ----------
    data_path:
        Directory holding the synced assets and the manifest.
    last_synced_version:
        Version recorded at the last sync; None if never synced.
    running_version:
        Version of the upstream bundle currently running.
    """
    modified, deleted = detect_file_changes(data_path)
    current = last_synced_version or "0.0.0"
    report = DriftReport(
        version_drift=last_synced_version != running_version,
        modified_files=modified,
        deleted_files=deleted,
        current_version=current,
        running_version=running_version,
        update_available=parse_semver(running_version) > parse_semver(current),
    )
    if report.has_drift:
        logger.info(
            "[KB] Drift in %s: %s (%d modified, %d deleted)",
            data_path, ",".join(report.kinds), len(modified), len(deleted),
        )
    return report


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

def backup_files(data_path: str, relative_files: Iterable[str]) -> Optional[str]:
    """
    Copy each listed file to ``<data_path>/.backups/<timestamp>/``.

    Returns
    -------
    Optional[str]
        The backup directory, or None if there was nothing to back up.
    """
    relative_files = [f for f in relative_files
                      if os.path.isfile(os.path.join(data_path, f))]
    if not relative_files:
        return None

    stamp = time.strftime("%Y%m%dT%H%M%SZ", time.gmtime())
    backup_dir = os.path.join(data_path, BACKUP_DIRNAME, stamp)
    suffix = 1
    while os.path.exists(backup_dir):
        backup_dir = os.path.join(data_path, BACKUP_DIRNAME, f"{stamp}-{suffix}")
        suffix += 1

    for rel_path in relative_files:
        dest = os.path.join(backup_dir, rel_path)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        shutil.copy2(os.path.join(data_path, rel_path), dest)
    logger.info("[KB] Backed up %d locally modified file(s) to %s",
                len(relative_files), backup_dir)
    return backup_dir


def sync_bundle(
    bundle_dir: str,
    data_path: str,
    running_version: str,
    asset_dirs: Iterable[str] = DEFAULT_ASSET_DIRS,
) -> SyncResult:
    """
    Copy the upstream asset tree from *bundle_dir* into *data_path*.

    Locally modified files are backed up first; the manifest is
    regenerated for the synced files and stamped with *running_version*.
    """
    asset_dirs = tuple(asset_dirs)
    modified, _deleted = detect_file_changes(data_path)
    bundle_files = list_asset_files(bundle_dir, asset_dirs)

    result = SyncResult(version=running_version, backed_up=list(modified))
    result.backup_dir = backup_files(data_path, modified)

    for rel_path in bundle_files:
        dest = os.path.join(data_path, rel_path)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        shutil.copy2(os.path.join(bundle_dir, rel_path), dest)
        result.files_copied += 1

    save_manifest(data_path, generate_manifest(data_path, bundle_files, running_version))
    logger.info("[KB] Synced %d file(s) from %s (version %s)",
                result.files_copied, bundle_dir, running_version)
    return result
