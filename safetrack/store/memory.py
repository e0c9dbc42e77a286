"""In-memory SessionStore — nested-dict realtime tree.

Used by tests and single-process hosts. Writes notify subscribers inline,
after the tree has been mutated, so a subscriber always reads the state
its notification refers to.
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from safetrack.store.protocol import (
    StoreError,
    Subscription,
    SubscriptionHub,
    TransactionFn,
    ValueCallback,
    generate_push_key,
    join_path,
    split_path,
)

logger = logging.getLogger(__name__)


class InMemorySessionStore:
    """Realtime tree held in process memory."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._root: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._hub = SubscriptionHub()
        self.write_count = 0

    @property
    def subscription_count(self) -> int:
        return len(self._hub)

    # ── Reads ─────────────────────────────────────────────────────────────

    def _read(self, path: str) -> Any:
        node: Any = self._root
        for seg in split_path(path):
            if not isinstance(node, dict) or seg not in node:
                return None
            node = node[seg]
        return copy.deepcopy(node)

    async def get(self, path: str) -> Any:
        return self._read(path)

    async def query(self, path: str, child: str, equal_to: Any) -> dict[str, Any]:
        collection = self._read(path) or {}
        return {
            key: value
            for key, value in collection.items()
            if isinstance(value, dict) and value.get(child) == equal_to
        }

    # ── Writes ────────────────────────────────────────────────────────────

    def _put(self, path: str, value: Any) -> None:
        segs = split_path(path)
        if not segs:
            raise StoreError("Cannot write to the root of the tree")
        if value is None:
            self._delete(segs)
            return
        node = self._root
        for seg in segs[:-1]:
            child = node.get(seg)
            if not isinstance(child, dict):
                child = {}
                node[seg] = child
            node = child
        node[segs[-1]] = copy.deepcopy(value)

    def _delete(self, segs: list[str]) -> None:
        trail = [self._root]
        for seg in segs[:-1]:
            child = trail[-1].get(seg)
            if not isinstance(child, dict):
                return
            trail.append(child)
        trail[-1].pop(segs[-1], None)
        # Prune emptied parents, as a realtime tree has no empty nodes
        for depth in range(len(trail) - 1, 0, -1):
            if trail[depth]:
                break
            trail[depth - 1].pop(segs[depth - 1], None)

    async def set(self, path: str, value: Any) -> None:
        self._put(path, value)
        self.write_count += 1
        await self._hub.dispatch(path, self.get)

    async def update(self, path: str, values: dict[str, Any]) -> None:
        for key, value in values.items():
            self._put(join_path(path, key), value)
        self.write_count += 1
        await self._hub.dispatch(path, self.get)

    async def transaction(self, path: str, fn: TransactionFn) -> dict[str, Any] | None:
        # No await between the read and the writes, so nothing interleaves
        values = fn(self._read(path))
        if values is None:
            return None
        for key, value in values.items():
            self._put(join_path(path, key), value)
        self.write_count += 1
        await self._hub.dispatch(path, self.get)
        return values

    async def push(self, path: str, value: Any) -> str:
        key = generate_push_key()
        await self.set(join_path(path, key), value)
        return key

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    # ── Subscriptions ─────────────────────────────────────────────────────

    async def subscribe(self, path: str, callback: ValueCallback) -> Subscription:
        sub = self._hub.add(path, callback)
        await self._hub.deliver(sub, self._read(sub.path))
        return sub

    def unsubscribe(self, subscription: Subscription | None) -> None:
        self._hub.remove(subscription)

    async def close(self) -> None:
        self._hub.clear()
