"""
`knowledge-sync` command line interface.

Commands
--------
knowledge-sync projects [--refresh]                   -- list discovered projects
knowledge-sync index <project> [--force] [--clean]    -- start a background index run
knowledge-sync index <project> --wait                 -- ... and follow its progress
knowledge-sync status <project>                       -- job state and index stats
knowledge-sync search <project> "<query>" [--kind code] [--top-k N]
knowledge-sync drift <data_path> --running-version V [--last-synced V]
knowledge-sync sync <bundle_dir> <data_path> --version V
knowledge-sync watch <project>                        -- re-index on file changes
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Optional

from tqdm import tqdm

from ..config import Config
from .drift import load_manifest
from .errors import KBError
from .jobs import JobState
from .registry import ScanOptions
from .searcher import ADVISORY_MESSAGE
from .service import KnowledgeService
from .store import CODE, KNOWLEDGE

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fail(message: str) -> None:
    print(message, file=sys.stderr)
    sys.exit(1)


def _follow_progress(service: KnowledgeService, project: str) -> None:
    """Poll the job until it leaves ``running``, driving a tqdm bar."""
    pbar = tqdm(total=None, unit="file", desc=f"Indexing {project}")
    try:
        while True:
            job = service.get_progress(project)
            if job.files_total is not None and pbar.total != job.files_total:
                pbar.total = job.files_total
                pbar.refresh()
            if job.files_processed > pbar.n:
                pbar.update(job.files_processed - pbar.n)
            if job.current_file:
                pbar.set_postfix_str(job.current_file, refresh=False)
            if not job.is_running:
                break
            time.sleep(_POLL_INTERVAL)
    finally:
        pbar.close()


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------


def _cmd_projects(args: argparse.Namespace, service: KnowledgeService) -> None:
    options = ScanOptions(exclude=args.exclude)
    if args.refresh:
        projects = service.registry.refresh(options)
    else:
        projects = service.scan(options)
    if not projects:
        print("No projects found.")
        return
    print(f"\nProjects  [{len(projects)}]")
    print("-" * 70)
    for p in projects:
        semantic = "semantic" if p.semantic_search_enabled else "-"
        print(f"  {p.name:<24} {p.source:<7} {semantic:<9} {p.root_path}")


def _cmd_index(args: argparse.Namespace, service: KnowledgeService) -> None:
    result = service.start_indexing(
        args.project,
        force=args.force,
        clean=args.clean,
        running_version=args.running_version,
    )
    name = result.job.project
    if not result.started:
        print(f"Indexing already running for '{name}' "
              f"({result.job.files_processed}/{result.job.files_total or '?'} files).")
    else:
        print(f"Indexing started for '{name}'.")
    if not args.wait:
        return

    _follow_progress(service, name)
    job = service.get_progress(name)
    if job.state is JobState.FAILED:
        _fail(f"Indexing failed: {job.error}")
    stats = service.stats(name)
    print(
        f"\nIndex complete:\n"
        f"  Knowledge chunks : {stats.knowledge_count}\n"
        f"  Code chunks      : {stats.code_count}"
    )


def _cmd_status(args: argparse.Namespace, service: KnowledgeService) -> None:
    record = service.resolve(args.project)
    job = service.get_progress(record.name)
    stats = service.stats(record.name)
    print(f"\nKnowledge Base Status: {record.name}")
    print("=" * 40)
    print(f"  {'state':<20} {job.state.value}")
    if job.is_running:
        print(f"  {'progress':<20} {job.files_processed}/{job.files_total or '?'}")
    if job.error:
        print(f"  {'error':<20} {job.error}")
    print(f"  {'knowledge chunks':<20} {stats.knowledge_count}")
    print(f"  {'code chunks':<20} {stats.code_count}")
    print(f"  {'last indexed':<20} {stats.last_indexed or 'never'}")
    print()


def _cmd_search(args: argparse.Namespace, service: KnowledgeService) -> None:
    t0 = time.perf_counter()
    results = service.search(args.query, args.project, k=args.top_k, kind=args.kind)
    elapsed_ms = (time.perf_counter() - t0) * 1000

    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
        return
    if not results:
        print(f"No results found for: {args.query!r}")
        return

    if results[0].indexing_in_progress:
        print(f"Note: {ADVISORY_MESSAGE}")
    print(f"\nSearch results for: {args.query!r}  [{len(results)} result(s)]")
    print("-" * 70)
    for i, r in enumerate(results, 1):
        print(f"\n  [{i}] {r.file_path}:{r.line_start}-{r.line_end}  score {r.score:.4f}")
        lines = r.text.splitlines()
        preview = "\n         ".join(lines[:5])
        if len(lines) > 5:
            preview += f"\n         ... ({len(lines) - 5} more lines)"
        print(f"         {preview}")
    print(f"\n  Search time: {elapsed_ms:.1f}ms")


def _cmd_drift(args: argparse.Namespace, service: KnowledgeService) -> None:
    last_synced = args.last_synced
    if last_synced is None:
        # Without an explicit version, trust the one stamped at the last sync
        manifest = load_manifest(args.data_path)
        last_synced = manifest.version if manifest is not None else None
    report = service.check_drift(args.data_path, last_synced, args.running_version)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
        return
    if not report.has_drift:
        print("No drift detected.")
        return
    print(f"Drift detected ({', '.join(report.kinds)})")
    if report.version_drift:
        print(f"  version: {report.current_version} -> {report.running_version}")
    for path in report.modified_files:
        print(f"  modified: {path}")
    for path in report.deleted_files:
        print(f"  deleted:  {path}")


def _cmd_sync(args: argparse.Namespace, service: KnowledgeService) -> None:
    result = service.sync_bundle(args.bundle_dir, args.data_path, args.version)
    print(f"Synced {result.files_copied} file(s) at version {result.version}.")
    if result.backup_dir:
        print(f"  Backed up {len(result.backed_up)} modified file(s) to {result.backup_dir}")


def _cmd_watch(args: argparse.Namespace, service: KnowledgeService) -> None:
    from .watcher import KBWatcher

    watcher = KBWatcher(service, args.project)
    print(f"Watching '{args.project}' for changes. Press Ctrl+C to stop.")
    watcher.start()
    print("\nFile watcher stopped.")


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="knowledge-sync",
        description="Project knowledge discovery, indexing and semantic search",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase log verbosity (-v info, -vv debug)")
    parser.add_argument("--config", default=None, help="Path to a .knowledge-sync.yaml file")
    subparsers = parser.add_subparsers(dest="cmd", metavar="COMMAND")
    subparsers.required = True

    projects_p = subparsers.add_parser("projects", help="List discovered projects")
    projects_p.add_argument("--refresh", action="store_true", help="Bypass the scan cache")
    projects_p.add_argument("--exclude", default=None, metavar="NAME",
                            help="Project name to leave out")
    projects_p.set_defaults(func=_cmd_projects)

    index_p = subparsers.add_parser("index", help="Start a background index run")
    index_p.add_argument("project", help="Project name or root path")
    index_p.add_argument("--force", action="store_true", help="Re-embed unchanged files too")
    index_p.add_argument("--clean", action="store_true", help="Delete the index before rebuilding")
    index_p.add_argument("--wait", action="store_true", help="Follow progress until the run ends")
    index_p.add_argument("--running-version", default=None,
                         help="Rebuild cleanly if assets were synced under another version")
    index_p.set_defaults(func=_cmd_index)

    status_p = subparsers.add_parser("status", help="Show job state and index stats")
    status_p.add_argument("project")
    status_p.set_defaults(func=_cmd_status)

    search_p = subparsers.add_parser("search", help="Semantic search in a project")
    search_p.add_argument("project")
    search_p.add_argument("query")
    search_p.add_argument("--kind", choices=[KNOWLEDGE, CODE], default=KNOWLEDGE)
    search_p.add_argument("--top-k", type=int, default=None, dest="top_k")
    search_p.add_argument("--json", action="store_true", help="Print results as JSON")
    search_p.set_defaults(func=_cmd_search)

    drift_p = subparsers.add_parser("drift", help="Check synced assets for drift")
    drift_p.add_argument("data_path")
    drift_p.add_argument("--running-version", required=True)
    drift_p.add_argument("--last-synced", default=None,
                         help="Version of the last sync (default: the manifest's version)")
    drift_p.add_argument("--json", action="store_true")
    drift_p.set_defaults(func=_cmd_drift)

    sync_p = subparsers.add_parser("sync", help="Copy a bundle into a data directory")
    sync_p.add_argument("bundle_dir")
    sync_p.add_argument("data_path")
    sync_p.add_argument("--version", required=True)
    sync_p.set_defaults(func=_cmd_sync)

    watch_p = subparsers.add_parser("watch", help="Re-index a project when its files change")
    watch_p.add_argument("project")
    watch_p.set_defaults(func=_cmd_watch)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: Optional[list[str]] = None, service: Optional[KnowledgeService] = None) -> None:
    """
    Entry point for the ``knowledge-sync`` console script.

    Parameters
    ----------
    argv:
        Argument list; defaults to ``sys.argv[1:]``.
    service:
        Pre-built service (tests); built from config when omitted.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not logging.root.handlers:
        level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
        logging.basicConfig(level=level, format="%(levelname)s  %(name)s  %(message)s")

    if service is None:
        service = KnowledgeService.from_config(Config.load(args.config))

    try:
        args.func(args, service)
    except KBError as exc:
        _fail(f"Error: {exc}")
