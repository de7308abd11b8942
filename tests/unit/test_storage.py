from __future__ import annotations

from pathlib import Path

import pytest

from school_import.services.storage import JsonFileStore, MemoryStore, PersistenceError


def test_memory_store_basic():
    store = MemoryStore({"a": "1"})
    assert store.get("a") == "1"
    store.set("b", "2")
    store.remove("a")
    store.remove("missing")
    assert store.keys() == ["b"]
    assert store.get("a") is None


def test_json_file_store_persists_across_instances(tmp_path: Path):
    store = JsonFileStore(tmp_path / "state")
    assert store.get("k") is None
    store.set("k", '[{"id": "1"}]')
    store.set("other", "x")
    again = JsonFileStore(tmp_path / "state")
    assert again.get("k") == '[{"id": "1"}]'
    again.remove("k")
    assert JsonFileStore(tmp_path / "state").get("k") is None
    assert JsonFileStore(tmp_path / "state").get("other") == "x"
    assert not list((tmp_path / "state").glob(".store-*.tmp"))


def test_json_file_store_corrupt_file(tmp_path: Path):
    store = JsonFileStore(tmp_path)
    store.path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(PersistenceError, match="not an object"):
        store.get("k")
    store.path.write_text("{", encoding="utf-8")
    with pytest.raises(PersistenceError, match="corrupt"):
        store.set("k", "v")


def test_json_file_store_unwritable(tmp_path: Path):
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    store = JsonFileStore(blocker / "sub")
    with pytest.raises(PersistenceError, match="not writable"):
        store.set("k", "v")
