"""
Unit tests for knowledge_sync.kb.registry

Covers config parsing, both sub-scans, de-duplication and the TTL cache.
The cache tests inject a counting scanner and a fake clock so no real
filesystem walk is needed.
"""

from __future__ import annotations

import os

import pytest

from knowledge_sync.kb.registry import (
    CONFIG_FILENAME,
    MARKER_DIR,
    ProjectRecord,
    ProjectRegistry,
    ScanOptions,
    parse_project_config,
    scan_for_projects,
    scan_global_storage,
    walk_local_projects,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _write(path, text: str = "") -> None:
    os.makedirs(os.path.dirname(str(path)), exist_ok=True)
    with open(str(path), "w", encoding="utf-8") as fh:
        fh.write(text)


def _make_local_project(root, config: str = "name: local-proj\nsemanticSearch:\n  enabled: true\n"):
    _write(root / MARKER_DIR / CONFIG_FILENAME, config)
    return root


class _CountingScanner:
    def __init__(self, projects=None):
        self.calls = 0
        self.projects = projects or [
            ProjectRecord(name="proj", root_path="/src/proj",
                          data_path="/data/proj", source="global",
                          semantic_search_enabled=True),
        ]

    def __call__(self, options, workspaces_dir, home_dir, max_depth):
        self.calls += 1
        return list(self.projects)


class _FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# parse_project_config
# ---------------------------------------------------------------------------

class TestParseProjectConfig:

    def test_global_example(self, tmp_path):
        path = tmp_path / "config.yaml"
        _write(path, "name: proj\nmode: global\nsourcePath: /src/proj\n")
        cfg = parse_project_config(str(path))
        assert cfg is not None
        assert cfg.name == "proj"
        assert cfg.mode == "global"
        assert cfg.source_path == "/src/proj"
        assert cfg.semantic_search_enabled is None

    def test_nested_name_and_storage_mode(self, tmp_path):
        path = tmp_path / "config.yaml"
        _write(path, "project:\n  name: nested\nstorage:\n  mode: workspace\n")
        cfg = parse_project_config(str(path))
        assert cfg.name == "nested"
        assert cfg.mode == "workspace"

    def test_semantic_search_block(self, tmp_path):
        path = tmp_path / "config.yaml"
        _write(path, "semanticSearch:\n  enabled: false\n  model: mini\n")
        cfg = parse_project_config(str(path))
        assert cfg.semantic_search_enabled is False
        assert cfg.model == "mini"

    def test_linked_projects_strip_mode_suffix(self, tmp_path):
        path = tmp_path / "config.yaml"
        _write(path, "linked_projects:\n  - other:readonly\n  - plain\n")
        cfg = parse_project_config(str(path))
        assert cfg.linked_projects == ("other", "plain")

    def test_unknown_mode_falls_back_to_global(self, tmp_path):
        path = tmp_path / "config.yaml"
        _write(path, "mode: sideways\n")
        assert parse_project_config(str(path)).mode == "global"

    def test_missing_file_returns_none(self, tmp_path):
        assert parse_project_config(str(tmp_path / "nope.yaml")) is None

    def test_invalid_yaml_returns_none(self, tmp_path):
        path = tmp_path / "config.yaml"
        _write(path, "name: [unclosed\n")
        assert parse_project_config(str(path)) is None

    def test_non_mapping_returns_none(self, tmp_path):
        path = tmp_path / "config.yaml"
        _write(path, "- just\n- a list\n")
        assert parse_project_config(str(path)) is None

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        _write(path, "")
        cfg = parse_project_config(str(path))
        assert cfg is not None
        assert cfg.name is None
        assert cfg.mode == "global"


# ---------------------------------------------------------------------------
# Sub-scans
# ---------------------------------------------------------------------------

class TestScanGlobalStorage:

    def test_config_example_becomes_global_record(self, tmp_path):
        workspaces = tmp_path / "workspaces"
        _write(workspaces / "proj" / CONFIG_FILENAME,
               "name: proj\nmode: global\nsourcePath: /src/proj\n")
        records = scan_global_storage(str(workspaces))
        assert len(records) == 1
        rec = records[0]
        assert rec.name == "proj"
        assert rec.source == "global"
        assert rec.root_path == "/src/proj"
        assert rec.data_path == str(workspaces / "proj")
        assert rec.semantic_search_enabled is True

    def test_directory_without_config_uses_dir_name(self, tmp_path):
        workspaces = tmp_path / "workspaces"
        (workspaces / "bare").mkdir(parents=True)
        rec = scan_global_storage(str(workspaces))[0]
        assert rec.name == "bare"
        assert rec.root_path == rec.data_path

    def test_semantic_search_can_be_disabled(self, tmp_path):
        workspaces = tmp_path / "workspaces"
        _write(workspaces / "off" / CONFIG_FILENAME, "semanticSearch: false\n")
        assert scan_global_storage(str(workspaces))[0].semantic_search_enabled is False

    def test_optional_subdirs_recorded(self, tmp_path):
        workspaces = tmp_path / "workspaces"
        (workspaces / "p" / "knowledge").mkdir(parents=True)
        rec = scan_global_storage(str(workspaces))[0]
        assert rec.knowledge_path == str(workspaces / "p" / "knowledge")
        assert rec.refs_path is None
        assert rec.tasks_path is None

    def test_files_are_ignored(self, tmp_path):
        workspaces = tmp_path / "workspaces"
        _write(workspaces / "stray.txt", "x")
        assert scan_global_storage(str(workspaces)) == []

    def test_missing_store_is_empty(self, tmp_path):
        assert scan_global_storage(str(tmp_path / "absent")) == []


class TestWalkLocalProjects:

    def test_finds_marker(self, tmp_path):
        _make_local_project(tmp_path / "code" / "app")
        records = walk_local_projects(str(tmp_path))
        assert [r.name for r in records] == ["local-proj"]
        rec = records[0]
        assert rec.source == "local"
        assert rec.root_path == str(tmp_path / "code" / "app")
        assert rec.data_path == str(tmp_path / "code" / "app" / MARKER_DIR)
        assert rec.semantic_search_enabled is True

    def test_local_semantic_search_defaults_off(self, tmp_path):
        _make_local_project(tmp_path / "app", config="name: quiet\n")
        assert walk_local_projects(str(tmp_path))[0].semantic_search_enabled is False

    def test_name_defaults_to_directory(self, tmp_path):
        _make_local_project(tmp_path / "unnamed", config="mode: workspace\n")
        assert walk_local_projects(str(tmp_path))[0].name == "unnamed"

    def test_unparseable_marker_is_skipped(self, tmp_path):
        _make_local_project(tmp_path / "broken", config="name: [oops\n")
        assert walk_local_projects(str(tmp_path)) == []

    def test_depth_limit(self, tmp_path):
        _make_local_project(tmp_path / "a" / "b" / "c")
        assert walk_local_projects(str(tmp_path), max_depth=2) == []
        assert len(walk_local_projects(str(tmp_path), max_depth=3)) == 1

    def test_skips_heavy_and_dot_dirs(self, tmp_path):
        _make_local_project(tmp_path / "node_modules" / "pkg")
        _make_local_project(tmp_path / ".hidden" / "pkg")
        assert walk_local_projects(str(tmp_path)) == []

    def test_marker_at_walk_root(self, tmp_path):
        _make_local_project(tmp_path)
        records = walk_local_projects(str(tmp_path))
        assert len(records) == 1
        assert records[0].root_path == str(tmp_path)


class TestScanForProjects:

    def _setup(self, tmp_path):
        workspaces = tmp_path / "store" / "workspaces"
        _write(workspaces / "proj" / CONFIG_FILENAME, "name: proj\n")
        home = tmp_path / "home"
        _make_local_project(home / "app")
        return str(workspaces), str(home)

    def test_both_sources(self, tmp_path):
        workspaces, home = self._setup(tmp_path)
        records = scan_for_projects(ScanOptions(), workspaces, home)
        assert [(r.name, r.source) for r in records] == [
            ("proj", "global"), ("local-proj", "local"),
        ]

    def test_exclude_by_name(self, tmp_path):
        workspaces, home = self._setup(tmp_path)
        records = scan_for_projects(ScanOptions(exclude="proj"), workspaces, home)
        assert [r.name for r in records] == ["local-proj"]

    def test_exclude_by_path(self, tmp_path):
        workspaces, home = self._setup(tmp_path)
        app = os.path.join(home, "app")
        records = scan_for_projects(ScanOptions(exclude_path=app), workspaces, home)
        assert [r.name for r in records] == ["proj"]

    def test_dedup_by_data_path(self, tmp_path):
        # A global entry symlinked to a local marker is the same project
        home = tmp_path / "home"
        _make_local_project(home / "app")
        workspaces = tmp_path / "workspaces"
        workspaces.mkdir()
        os.symlink(str(home / "app" / MARKER_DIR), str(workspaces / "linked"))
        records = scan_for_projects(ScanOptions(), str(workspaces), str(home))
        assert [(r.name, r.source) for r in records] == [("local-proj", "global")]


# ---------------------------------------------------------------------------
# ProjectRegistry cache
# ---------------------------------------------------------------------------

class TestProjectRegistry:

    def _registry(self, scanner, clock, ttl=30.0):
        return ProjectRegistry("/ws", home_dir="/home", ttl_seconds=ttl,
                               scanner=scanner, clock=clock)

    def test_second_scan_within_ttl_does_not_walk(self):
        scanner, clock = _CountingScanner(), _FakeClock()
        reg = self._registry(scanner, clock)
        first = reg.scan()
        clock.now += 10
        second = reg.scan()
        assert scanner.calls == 1
        assert first == second
        assert reg.scan_count == 1

    def test_scan_after_ttl_rescans(self):
        scanner, clock = _CountingScanner(), _FakeClock()
        reg = self._registry(scanner, clock)
        reg.scan()
        clock.now += 31
        reg.scan()
        assert scanner.calls == 2

    def test_different_options_miss_cache(self):
        scanner, clock = _CountingScanner(), _FakeClock()
        reg = self._registry(scanner, clock)
        reg.scan(ScanOptions())
        reg.scan(ScanOptions(exclude="proj"))
        assert scanner.calls == 2

    def test_equal_options_hit_cache(self):
        scanner, clock = _CountingScanner(), _FakeClock()
        reg = self._registry(scanner, clock)
        reg.scan(ScanOptions(exclude="x"))
        reg.scan(ScanOptions(exclude="x"))
        assert scanner.calls == 1

    def test_refresh_always_rescans(self):
        scanner, clock = _CountingScanner(), _FakeClock()
        reg = self._registry(scanner, clock)
        reg.scan()
        reg.refresh()
        assert scanner.calls == 2
        assert reg.is_cache_valid()

    def test_invalidate(self):
        scanner, clock = _CountingScanner(), _FakeClock()
        reg = self._registry(scanner, clock)
        reg.scan()
        reg.invalidate()
        assert not reg.is_cache_valid()
        assert reg.get_cached() is None
        reg.scan()
        assert scanner.calls == 2

    def test_get_cached_never_scans(self):
        scanner, clock = _CountingScanner(), _FakeClock()
        reg = self._registry(scanner, clock)
        assert reg.get_cached() is None
        assert scanner.calls == 0
        reg.scan()
        assert [p.name for p in reg.get_cached()] == ["proj"]
        clock.now += 60
        assert reg.get_cached() is None

    def test_returned_list_is_a_copy(self):
        scanner, clock = _CountingScanner(), _FakeClock()
        reg = self._registry(scanner, clock)
        reg.scan().clear()
        assert len(reg.scan()) == 1

    def test_find_by_name_and_path(self):
        scanner, clock = _CountingScanner(), _FakeClock()
        reg = self._registry(scanner, clock)
        assert reg.find("proj").data_path == "/data/proj"
        assert reg.find("/src/proj").name == "proj"
        assert reg.find("missing") is None
        assert scanner.calls == 1

    def test_real_scanner_end_to_end(self, tmp_path):
        workspaces = tmp_path / "workspaces"
        _write(workspaces / "proj" / CONFIG_FILENAME, "name: proj\n")
        reg = ProjectRegistry(str(workspaces), home_dir=str(tmp_path / "empty-home"))
        assert [p.name for p in reg.scan()] == ["proj"]

    @pytest.mark.parametrize("ttl", [0.0, -1.0])
    def test_non_positive_ttl_disables_cache(self, ttl):
        scanner, clock = _CountingScanner(), _FakeClock()
        reg = self._registry(scanner, clock, ttl=ttl)
        reg.scan()
        reg.scan()
        assert scanner.calls == 2
