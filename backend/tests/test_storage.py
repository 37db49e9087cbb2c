"""
Tests for session snapshot storage.
"""
import time

import pytest

from analyst.core.storage import InMemoryStorage, get_storage, reset_storage


@pytest.mark.unit
def test_set_get_delete():
    storage = InMemoryStorage()

    assert storage.set("s1", {"cards": [1, 2]}, ttl_seconds=60) is True
    assert storage.get("s1") == {"cards": [1, 2]}
    assert storage.size() == 1
    assert storage.delete("s1") is True
    assert storage.get("s1") is None
    assert storage.delete("s1") is False


@pytest.mark.unit
def test_get_returns_independent_copies():
    storage = InMemoryStorage()
    storage.set("s1", {"cards": []}, ttl_seconds=60)

    storage.get("s1")["cards"].append("mutated")

    assert storage.get("s1") == {"cards": []}


@pytest.mark.unit
def test_expired_entries_are_dropped(monkeypatch):
    storage = InMemoryStorage()
    storage.set("s1", {"a": 1}, ttl_seconds=60)

    real_time = time.time
    monkeypatch.setattr(time, "time", lambda: real_time() + 120)

    assert storage.get("s1") is None
    assert storage.size() == 0


@pytest.mark.unit
def test_default_backend_is_in_memory():
    reset_storage()
    assert isinstance(get_storage(), InMemoryStorage)
    assert get_storage() is get_storage()
