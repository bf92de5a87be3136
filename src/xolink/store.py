"""Shared observable key-value store used as the only coordination primitive.

Values live in a tree addressed by slash separated paths (``games/AB12CD34``).
Reading a parent path returns a dict of its children. Writing ``None`` removes
a node, and empty parents disappear with it.

Subscribers registered on a path are called with a fresh copy of the value at
that path whenever a write changes it, including writes to ancestors or
descendants. The first call happens on subscription with the current value.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import threading
import uuid
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
)

from .errors import StoreError

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]
Unsubscribe = Callable[[], None]
TransactionFn = Callable[[Any], Any]

KEY_LENGTH = 8
KEY_ATTEMPTS = 10


class _Abort:
    def __repr__(self) -> str:
        return "ABORT"


# Returned from a transaction function to leave the value untouched.
ABORT: Any = _Abort()


class SharedStore(Protocol):
    """Contract the broker relies on. Any realtime database can back it."""

    def read(self, path: str) -> Any:
        ...

    def write(self, path: str, value: Any) -> None:
        ...

    def update(self, path: str, fields: Mapping[str, Any]) -> None:
        """Apply all ``fields`` to the children of ``path`` in one step."""
        ...

    def delete(self, path: str) -> None:
        ...

    def subscribe(self, path: str, callback: Callback) -> Unsubscribe:
        ...

    def allocate_key(self, parent: str) -> str:
        ...

    def transaction(self, path: str, fn: TransactionFn) -> Tuple[bool, Any]:
        """Atomically replace the value at ``path`` with ``fn(current)``.

        Returns ``(committed, value)``. When ``fn`` returns ``ABORT`` nothing
        is written and ``value`` is the current value.
        """
        ...


def split_path(path: str) -> Tuple[str, ...]:
    parts = tuple(p for p in path.strip("/").split("/") if p)
    if not parts:
        raise StoreError(f"Invalid store path {path!r}")
    return parts


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p)


def _related(a: Tuple[str, ...], b: Tuple[str, ...]) -> bool:
    n = min(len(a), len(b))
    return a[:n] == b[:n]


class InMemoryStore:
    """Thread-safe in-process implementation of :class:`SharedStore`.

    A re-entrant lock serializes every write together with its notification
    fan-out, so each subscriber sees snapshots for a path in commit order.
    Callbacks may write back into the store from inside a notification.
    """

    def __init__(self) -> None:
        self._root: Dict[str, Any] = {}
        self._lock = threading.RLock()
        self._subscribers: Dict[int, Tuple[Tuple[str, ...], Callback]] = {}
        self._next_token = 0
        self._reserved: Dict[str, set] = {}

    # ---- reads ----

    def read(self, path: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._get(split_path(path)))

    def _get(self, parts: Tuple[str, ...]) -> Any:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    # ---- writes ----

    def write(self, path: str, value: Any) -> None:
        parts = split_path(path)
        with self._lock:
            self._commit(parts, lambda: self._set(parts, value))

    def update(self, path: str, fields: Mapping[str, Any]) -> None:
        parts = split_path(path)
        with self._lock:

            def apply() -> None:
                for key, value in fields.items():
                    self._set(parts + split_path(key), value)

            self._commit(parts, apply)

    def delete(self, path: str) -> None:
        self.write(path, None)

    def transaction(self, path: str, fn: TransactionFn) -> Tuple[bool, Any]:
        parts = split_path(path)
        with self._lock:
            current = copy.deepcopy(self._get(parts))
            result = fn(current)
            if result is ABORT:
                return False, current
            self._commit(parts, lambda: self._set(parts, result))
            return True, copy.deepcopy(result)

    def allocate_key(self, parent: str) -> str:
        parts = split_path(parent)
        with self._lock:
            children = self._get(parts)
            reserved = self._reserved.setdefault("/".join(parts), set())
            for _ in range(KEY_ATTEMPTS):
                key = uuid.uuid4().hex[:KEY_LENGTH].upper()
                taken = isinstance(children, dict) and key in children
                if not taken and key not in reserved:
                    reserved.add(key)
                    return key
        raise StoreError(f"Unable to allocate a key under {parent!r}")

    def _set(self, parts: Tuple[str, ...], value: Any) -> None:
        self._release(parts)
        if value is None:
            self._remove(parts)
            return
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = copy.deepcopy(value)

    def _release(self, parts: Tuple[str, ...]) -> None:
        # An allocated key stays reserved only until its first write.
        for depth in range(len(parts)):
            parent = "/".join(parts[:depth])
            reserved = self._reserved.get(parent)
            if reserved and parts[depth] in reserved:
                reserved.discard(parts[depth])
                if not reserved:
                    del self._reserved[parent]

    def _remove(self, parts: Tuple[str, ...]) -> None:
        trail: List[Tuple[Dict[str, Any], str]] = []
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return
            trail.append((node, part))
            node = node[part]
        parent, key = trail.pop()
        del parent[key]
        while trail and not parent:
            parent, key = trail.pop()
            del parent[key]

    def _commit(self, parts: Tuple[str, ...], mutate: Callable[[], None]) -> None:
        watchers = [
            (token, sub_path, callback)
            for token, (sub_path, callback) in self._subscribers.items()
            if _related(sub_path, parts)
        ]
        before = {token: copy.deepcopy(self._get(p)) for token, p, _ in watchers}
        mutate()
        for token, sub_path, callback in watchers:
            if token not in self._subscribers:
                continue
            after = self._get(sub_path)
            if after == before[token]:
                continue
            self._notify(callback, copy.deepcopy(after))

    # ---- subscriptions ----

    def subscribe(self, path: str, callback: Callback) -> Unsubscribe:
        parts = split_path(path)
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = (parts, callback)
            self._notify(callback, copy.deepcopy(self._get(parts)))

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _notify(self, callback: Callback, value: Any) -> None:
        try:
            callback(value)
        except Exception:
            # A broken subscriber must not abort the writer's commit.
            logger.exception("Store subscriber %r failed", callback)


async def first_value(
    store: SharedStore,
    path: str,
    predicate: Callable[[Any], bool] = lambda value: value is not None,
    timeout: Optional[float] = None,
) -> Any:
    """Wait for the first value at ``path`` matching ``predicate``.

    Subscribes, resolves on the first matching notification, then
    unsubscribes. Raises ``asyncio.TimeoutError`` when ``timeout`` expires.
    Notifications may arrive on any thread.
    """

    loop = asyncio.get_running_loop()
    future: asyncio.Future = loop.create_future()

    def resolve(value: Any) -> None:
        if not future.done():
            future.set_result(value)

    def on_value(value: Any) -> None:
        if predicate(value):
            loop.call_soon_threadsafe(resolve, value)

    unsubscribe = store.subscribe(path, on_value)
    try:
        return await asyncio.wait_for(future, timeout)
    finally:
        unsubscribe()
