"""
Unit tests for knowledge_sync.kb.store
"""

from __future__ import annotations

import json
import os

import pytest

from knowledge_sync.kb.registry import ProjectRecord
from knowledge_sync.kb.store import (
    CODE,
    KNOWLEDGE,
    ChunkRecord,
    FileMeta,
    KnowledgeStore,
    write_json_atomic,
)


def _project(tmp_path, name: str = "proj") -> ProjectRecord:
    data = tmp_path / name
    data.mkdir(parents=True, exist_ok=True)
    return ProjectRecord(name=name, root_path=str(data), data_path=str(data),
                         source="global", semantic_search_enabled=True)


def _record(file_path: str = "a.md", start: int = 0, text: str = "hello") -> ChunkRecord:
    return ChunkRecord(
        id=f"{file_path}:{start}", file_path=file_path, start=start,
        end=start + len(text), line_start=1, line_end=1,
        text=text, vector=[1.0, 0.0],
    )


def _bump_mtime(path: str) -> None:
    st = os.stat(path)
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))


class TestWriteJsonAtomic:

    def test_writes_and_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / "sub" / "data.json"
        write_json_atomic(str(path), {"a": 1})
        assert json.loads(path.read_text()) == {"a": 1}
        assert os.listdir(str(tmp_path / "sub")) == ["data.json"]

    def test_failed_write_keeps_previous_file(self, tmp_path):
        path = tmp_path / "data.json"
        write_json_atomic(str(path), {"v": 1})
        with pytest.raises(TypeError):
            write_json_atomic(str(path), {"v": object()})
        assert json.loads(path.read_text()) == {"v": 1}
        assert os.listdir(str(tmp_path)) == ["data.json"]


class TestKnowledgeStore:

    def test_index_paths(self, tmp_path):
        project = _project(tmp_path)
        assert KnowledgeStore.index_path(project, KNOWLEDGE).endswith(
            os.path.join("knowledge", "embeddings.json"))
        assert KnowledgeStore.index_path(project, CODE).endswith(
            os.path.join("knowledge", "code-embeddings.json"))
        with pytest.raises(ValueError):
            KnowledgeStore.index_path(project, "images")

    def test_missing_collection_is_empty(self, tmp_path):
        collection = KnowledgeStore().load(_project(tmp_path), KNOWLEDGE)
        assert collection.records == []
        assert collection.files == {}

    def test_persist_then_load(self, tmp_path):
        store, project = KnowledgeStore(), _project(tmp_path)
        store.persist(project, KNOWLEDGE, [_record()],
                      files={"a.md": FileMeta(mtime=12.5, chunk_count=1)}, model="m")
        collection = store.load(project, KNOWLEDGE)
        assert [r.text for r in collection.records] == ["hello"]
        assert collection.records[0].vector == [1.0, 0.0]
        assert collection.files["a.md"] == FileMeta(mtime=12.5, chunk_count=1)
        assert collection.model == "m"

    def test_load_is_cached_until_file_changes(self, tmp_path):
        store, project = KnowledgeStore(), _project(tmp_path)
        store.persist(project, KNOWLEDGE, [_record()])
        store.load(project, KNOWLEDGE)
        store.load(project, KNOWLEDGE)
        assert store.parse_count == 1

        store.persist(project, KNOWLEDGE, [_record(), _record("b.md", text="other text")])
        _bump_mtime(store.index_path(project, KNOWLEDGE))
        assert len(store.load(project, KNOWLEDGE).records) == 2
        assert store.parse_count == 2

    def test_corrupt_file_is_empty(self, tmp_path):
        store, project = KnowledgeStore(), _project(tmp_path)
        path = store.index_path(project, KNOWLEDGE)
        os.makedirs(os.path.dirname(path))
        with open(path, "w", encoding="utf-8") as fh:
            fh.write("{broken")
        assert store.load(project, KNOWLEDGE).records == []

    def test_delete(self, tmp_path):
        store, project = KnowledgeStore(), _project(tmp_path)
        store.persist(project, KNOWLEDGE, [_record()])
        store.persist(project, CODE, [_record("a.py")])
        store.delete(project)
        assert not os.path.exists(store.index_path(project, KNOWLEDGE))
        assert store.load(project, CODE).records == []
        store.delete(project)  # missing files are fine

    def test_stats(self, tmp_path):
        store, project = KnowledgeStore(), _project(tmp_path)
        empty = store.stats(project)
        assert (empty.knowledge_count, empty.code_count, empty.last_indexed) == (0, 0, None)

        store.persist(project, KNOWLEDGE, [_record(), _record("b.md")])
        store.persist(project, CODE, [_record("a.py")])
        stats = store.stats(project)
        assert stats.knowledge_count == 2
        assert stats.code_count == 1
        assert stats.last_indexed is not None
        assert stats.last_indexed.endswith("Z")

    def test_stats_cached_by_signature(self, tmp_path):
        store, project = KnowledgeStore(), _project(tmp_path)
        store.persist(project, KNOWLEDGE, [_record()])
        first = store.stats(project)
        parses = store.parse_count
        assert store.stats(project) is first
        assert store.parse_count == parses

        store.persist(project, CODE, [_record("a.py")])
        assert store.stats(project).code_count == 1

    def test_projects_are_isolated(self, tmp_path):
        store = KnowledgeStore()
        a, b = _project(tmp_path, "a"), _project(tmp_path, "b")
        store.persist(a, KNOWLEDGE, [_record()])
        assert store.load(b, KNOWLEDGE).records == []
