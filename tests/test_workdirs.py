"""Tests for per-scope working directories."""

from __future__ import annotations

import pytest

from clydegate.scope import ScopeContext
from clydegate.workdirs import WorkingDirectoryStore


class TestWorkingDirectoryStore:
    def test_default(self):
        store = WorkingDirectoryStore(default="/srv")
        assert store.get(ScopeContext("G1")) == "/srv"
        assert WorkingDirectoryStore().get(ScopeContext("G1")) is None

    def test_set_channel(self, tmp_path):
        store = WorkingDirectoryStore()
        path = store.set(ScopeContext("G1", user_id="u"), str(tmp_path))
        assert path == str(tmp_path.resolve())
        assert store.get(ScopeContext("G1", "5", "u")) == path

    def test_thread_overrides_channel(self, tmp_path):
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        store = WorkingDirectoryStore()
        store.set(ScopeContext("G1"), str(tmp_path / "a"))
        store.set(ScopeContext("G1", "5"), str(tmp_path / "b"))
        assert store.get(ScopeContext("G1", "5")).endswith("b")
        assert store.get(ScopeContext("G1", "6")).endswith("a")

    def test_relative_to_base(self, tmp_path):
        (tmp_path / "proj").mkdir()
        store = WorkingDirectoryStore(base_directory=str(tmp_path))
        assert store.set(ScopeContext("G1"), "proj") == str((tmp_path / "proj").resolve())

    def test_missing_directory(self, tmp_path):
        store = WorkingDirectoryStore()
        with pytest.raises(ValueError):
            store.set(ScopeContext("G1"), str(tmp_path / "nope"))
        assert store.snapshot() == {}

    def test_restore_does_not_overwrite(self, tmp_path):
        store = WorkingDirectoryStore()
        store.set(ScopeContext("G1"), str(tmp_path))
        assert store.restore({"G1": "/old", "G2": "/other"}) == 1
        assert store.snapshot() == {"G1": str(tmp_path.resolve()), "G2": "/other"}
