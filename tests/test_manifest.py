import json
import os
from datetime import datetime
from pathlib import Path, PurePath

import pytest

from ilias_mirror.manifest import ManifestEntry, ManifestError, ManifestStore


def make_entry(path: str, remote_id: str = "10", size: int = 5) -> ManifestEntry:
    return ManifestEntry(PurePath(path), remote_id, "size=5;mtime=?;version=1", size, datetime(2024, 1, 1, 12, 0))


def leftover_tmp_files(directory: Path) -> list:
    return [p.name for p in directory.iterdir() if ".tmp." in p.name]


def test_missing_manifest_is_empty(tmp_path):
    store = ManifestStore(tmp_path / ".manifest.json")

    assert store.load() == {}
    assert not store.dirty


def test_committed_entries_are_loaded_again(tmp_path):
    path = tmp_path / ".manifest.json"
    store = ManifestStore(path)
    store.record(make_entry("Course/a.txt"))
    store.record(make_entry("Course/Sub/b.pdf", remote_id="11", size=0))
    assert store.dirty

    store.commit()

    assert not store.dirty
    loaded = ManifestStore(path).load()
    assert loaded == store.entries
    assert loaded[PurePath("Course/a.txt")].remote_id == "10"
    assert leftover_tmp_files(tmp_path) == []


def test_manifest_file_is_versioned_json(tmp_path):
    path = tmp_path / ".manifest.json"
    store = ManifestStore(path)
    store.record(make_entry("a.txt"))
    store.commit()

    data = json.loads(path.read_text(encoding="utf-8"))

    assert data["version"] == ManifestStore.FORMAT_VERSION
    assert data["files"][0]["path"] == "a.txt"
    assert data["files"][0]["stale"] is False


@pytest.mark.parametrize("content", [
    "{not json",
    "[]",
    '{"version": 99, "files": []}',
    '{"version": 1, "files": {}}',
    '{"version": 1, "files": [{"path": "a.txt"}]}',
])
def test_corrupt_manifest_is_an_error(tmp_path, content):
    path = tmp_path / ".manifest.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ManifestError):
        ManifestStore(path).load()


def test_duplicate_paths_are_an_error(tmp_path):
    path = tmp_path / ".manifest.json"
    entry = make_entry("a.txt").to_json()
    path.write_text(json.dumps({"version": 1, "files": [entry, entry]}), encoding="utf-8")

    with pytest.raises(ManifestError):
        ManifestStore(path).load()


def test_remove_and_mark_stale(tmp_path):
    store = ManifestStore(tmp_path / ".manifest.json")
    store.record(make_entry("a.txt"))
    store.record(make_entry("b.txt", remote_id="11"))
    store.commit()

    store.remove(PurePath("a.txt"))
    store.mark_stale(PurePath("b.txt"))
    store.remove(PurePath("does-not-exist.txt"))

    assert store.get(PurePath("a.txt")) is None
    b = store.get(PurePath("b.txt"))
    assert b is not None and b.stale
    assert store.dirty


def test_commit_retries_once(tmp_path, monkeypatch):
    path = tmp_path / ".manifest.json"
    store = ManifestStore(path)
    store.record(make_entry("a.txt"))

    real_replace = os.replace
    calls = 0

    def flaky_replace(src, dst):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise OSError("disk hiccup")
        real_replace(src, dst)

    monkeypatch.setattr(os, "replace", flaky_replace)
    store.commit()

    assert calls == 2
    assert PurePath("a.txt") in ManifestStore(path).load()
    assert leftover_tmp_files(tmp_path) == []


def test_failed_commit_keeps_old_manifest(tmp_path, monkeypatch):
    path = tmp_path / ".manifest.json"
    store = ManifestStore(path)
    store.record(make_entry("a.txt"))
    store.commit()

    store.record(make_entry("b.txt", remote_id="11"))

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(ManifestError):
        store.commit()
    monkeypatch.undo()

    assert list(ManifestStore(path).load()) == [PurePath("a.txt")]
    assert store.dirty
    assert leftover_tmp_files(tmp_path) == []
