"""
Tests for the knowledge-sync command line, run in-process against a
service built on a temporary global store.
"""

from __future__ import annotations

import json
import os

import pytest

from knowledge_sync.config import Config
from knowledge_sync.kb.cli import main
from knowledge_sync.kb.embedder import HashingEmbedder
from knowledge_sync.kb.registry import ProjectRegistry
from knowledge_sync.kb.searcher import ADVISORY_MESSAGE, ScoredResult
from knowledge_sync.kb.service import KnowledgeService


def _write(path, text: str) -> None:
    os.makedirs(os.path.dirname(str(path)), exist_ok=True)
    with open(str(path), "w", encoding="utf-8") as fh:
        fh.write(text)


@pytest.fixture
def service(tmp_path):
    workspaces = tmp_path / "workspaces"
    _write(workspaces / "proj" / "config.yaml", "name: proj\n")
    _write(workspaces / "proj" / "docs" / "intro.md", "Deploys run through the release pipeline.\n")
    registry = ProjectRegistry(str(workspaces), home_dir=str(tmp_path / "home"))
    return KnowledgeService(registry, HashingEmbedder(), config=Config({}))


class TestCli:

    def test_projects(self, service, capsys):
        main(["projects"], service=service)
        out = capsys.readouterr().out
        assert "proj" in out
        assert "global" in out

    def test_index_wait_then_search_json(self, service, capsys):
        main(["index", "proj", "--wait"], service=service)
        out = capsys.readouterr().out
        assert "Indexing started for 'proj'" in out
        assert "Knowledge chunks : 2" in out  # config.yaml + docs/intro.md

        main(["search", "proj", "release pipeline", "--json"], service=service)
        results = json.loads(capsys.readouterr().out)
        assert results[0]["filePath"] == "docs/intro.md"
        assert results[0]["indexingInProgress"] is False

    def test_status(self, service, capsys):
        main(["status", "proj"], service=service)
        out = capsys.readouterr().out
        assert "idle" in out
        assert "never" in out

    def test_unknown_project_exits_nonzero(self, service, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["index", "ghost"], service=service)
        assert excinfo.value.code == 1
        assert "ghost" in capsys.readouterr().err

    def test_sync_then_drift(self, service, tmp_path, capsys):
        bundle = tmp_path / "bundle"
        _write(bundle / "templates" / "t.md", "template")
        data = tmp_path / "data"
        main(["sync", str(bundle), str(data), "--version", "1.0.0"], service=service)
        assert "Synced 1 file(s)" in capsys.readouterr().out

        main(["drift", str(data), "--running-version", "1.0.0",
              "--last-synced", "1.0.0"], service=service)
        assert "No drift detected." in capsys.readouterr().out

        _write(data / "templates" / "t.md", "changed")
        main(["drift", str(data), "--running-version", "1.0.0",
              "--last-synced", "1.0.0", "--json"], service=service)
        report = json.loads(capsys.readouterr().out)
        assert report["type"] == "content"
        assert report["modifiedFiles"] == ["templates/t.md"]

    def test_command_required(self, service):
        with pytest.raises(SystemExit):
            main([], service=service)

    def test_drift_defaults_to_manifest_version(self, service, tmp_path, capsys):
        bundle = tmp_path / "bundle"
        _write(bundle / "docs" / "d.md", "doc")
        data = tmp_path / "data"
        main(["sync", str(bundle), str(data), "--version", "1.0.0"], service=service)
        capsys.readouterr()

        main(["drift", str(data), "--running-version", "1.0.0"], service=service)
        assert "No drift detected." in capsys.readouterr().out

        main(["drift", str(data), "--running-version", "1.1.0", "--json"], service=service)
        report = json.loads(capsys.readouterr().out)
        assert report["type"] == "version"
        assert report["version"]["current"] == "1.0.0"
        assert report["updateAvailable"] is True

    def test_search_during_indexing_prints_advisory(self, service, capsys, monkeypatch):
        hit = ScoredResult(text="Deploys run", file_path="docs/intro.md", score=0.9,
                           indexing_in_progress=True, project="proj")
        monkeypatch.setattr(service, "search", lambda *args, **kwargs: [hit])
        main(["search", "proj", "deploys"], service=service)
        assert f"Note: {ADVISORY_MESSAGE}" in capsys.readouterr().out
