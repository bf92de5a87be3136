"""Tests for the in-process shared observable store."""

from __future__ import annotations

import asyncio

import pytest

from xolink.errors import StoreError
from xolink.store import ABORT, InMemoryStore, first_value


def test_parent_read_collects_children():
    store = InMemoryStore()
    store.write("queue/a", {"uid": "a"})
    store.write("queue/b", {"uid": "b"})
    assert store.read("queue") == {"a": {"uid": "a"}, "b": {"uid": "b"}}


def test_delete_prunes_empty_parents():
    store = InMemoryStore()
    store.write("queue/a", {"uid": "a"})
    store.delete("queue/a")
    assert store.read("queue") is None
    assert store.read("queue/a") is None


def test_reads_are_copies():
    store = InMemoryStore()
    store.write("games/g", {"board": [None] * 9})
    snapshot = store.read("games/g")
    snapshot["board"][0] = "X"
    assert store.read("games/g")["board"][0] is None


def test_update_applies_all_fields_in_one_notification():
    store = InMemoryStore()
    store.write("games/g", {"turn": "X", "status": "playing"})
    seen = []
    store.subscribe("games/g", seen.append)
    store.update("games/g", {"turn": "O", "status": "finished"})
    assert seen == [
        {"turn": "X", "status": "playing"},
        {"turn": "O", "status": "finished"},
    ]


def test_subscribers_only_hear_related_paths():
    store = InMemoryStore()
    seen = []
    store.subscribe("matchmaking/a", seen.append)
    store.write("matchmaking/b", "G1")
    store.write("matchmaking/a", "G2")
    store.delete("matchmaking")
    assert seen == [None, "G2", None]


def test_unchanged_write_does_not_notify():
    store = InMemoryStore()
    store.write("games/g", {"turn": "X"})
    seen = []
    store.subscribe("games/g", seen.append)
    store.write("games/g", {"turn": "X"})
    assert len(seen) == 1


def test_unsubscribe_stops_notifications():
    store = InMemoryStore()
    seen = []
    unsubscribe = store.subscribe("games/g", seen.append)
    unsubscribe()
    store.write("games/g", {"turn": "X"})
    assert seen == [None]
    assert store.subscriber_count() == 0


def test_failing_subscriber_does_not_break_writer():
    store = InMemoryStore()

    def broken(value):
        if value is not None:
            raise RuntimeError("boom")

    seen = []
    store.subscribe("games/g", broken)
    store.subscribe("games/g", seen.append)
    store.write("games/g", {"turn": "X"})
    assert seen[-1] == {"turn": "X"}


def test_transaction_commits_and_aborts():
    store = InMemoryStore()
    store.write("counter", 1)

    committed, value = store.transaction("counter", lambda current: current + 1)
    assert committed and value == 2

    committed, value = store.transaction("counter", lambda current: ABORT)
    assert not committed and value == 2
    assert store.read("counter") == 2


def test_transaction_returning_none_deletes():
    store = InMemoryStore()
    store.write("queue/a", {"uid": "a"})
    committed, _ = store.transaction("queue/a", lambda current: None)
    assert committed
    assert store.read("queue") is None


def test_allocate_key_is_unique():
    store = InMemoryStore()
    keys = {store.allocate_key("games") for _ in range(200)}
    assert len(keys) == 200
    assert all(key.isupper() or key.isdigit() for key in keys)


def test_written_keys_are_no_longer_reserved():
    store = InMemoryStore()
    first = store.allocate_key("games")
    second = store.allocate_key("games")
    store.write(f"games/{first}", {"status": "waiting"})
    store.update(f"games/{second}", {"status": "waiting"})
    assert store._reserved == {}

    third = store.allocate_key("games")
    assert third not in (first, second)
    assert store._reserved == {"games": {third}}


def test_empty_path_is_rejected():
    store = InMemoryStore()
    with pytest.raises(StoreError):
        store.read("/")


def test_first_value_waits_for_match_and_unsubscribes():
    store = InMemoryStore()

    async def scenario():
        waiter = asyncio.ensure_future(first_value(store, "matchmaking/a", timeout=1.0))
        await asyncio.sleep(0)
        store.write("matchmaking/a", "G1")
        return await waiter

    assert asyncio.run(scenario()) == "G1"
    assert store.subscriber_count() == 0


def test_first_value_sees_existing_value():
    store = InMemoryStore()
    store.write("matchmaking/a", "G1")
    assert asyncio.run(first_value(store, "matchmaking/a", timeout=1.0)) == "G1"


def test_first_value_times_out():
    store = InMemoryStore()
    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(first_value(store, "matchmaking/a", timeout=0.01))
    assert store.subscriber_count() == 0
