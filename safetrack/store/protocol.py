"""SessionStore protocol — the realtime key-value tree the core talks to.

Paths are slash-separated (``sessions/{id}/checkRequest``). Semantics:
- ``set`` replaces the node at a path (``None`` deletes it)
- ``update`` writes only the given children (no clobbering of siblings)
- ``push`` appends under a generated, time-ordered key
- ``transaction`` reads a node and writes children derived from it
  atomically; the derive function returns None to leave the node alone
- ``subscribe`` delivers the current value on attach, then every distinct
  value of the node after writes to the node, an ancestor or a descendant

Concurrent writers resolve by last write wins.
"""

from __future__ import annotations

import copy
import itertools
import logging
import secrets
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

ValueCallback = Callable[[Any], Awaitable[None]]
TransactionFn = Callable[[Any], dict[str, Any] | None]

_MISSING = object()


class StoreError(Exception):
    """A store read/write failed (transport, serialization, conflict)."""


def split_path(path: str) -> list[str]:
    """Split a slash path into segments, ignoring empty ones."""
    return [seg for seg in path.split("/") if seg]


def join_path(*parts: str) -> str:
    return "/".join(seg for part in parts for seg in split_path(part))


def paths_related(a: str, b: str) -> bool:
    """True if one path equals or contains the other."""
    sa, sb = split_path(a), split_path(b)
    n = min(len(sa), len(sb))
    return sa[:n] == sb[:n]


_push_lock = threading.Lock()
_last_push_ms = 0
_push_seq = itertools.count()


def generate_push_key() -> str:
    """20-char key, lexicographically ordered by creation time.

    13 digits of epoch milliseconds, a 3-digit in-process sequence for keys
    created within the same millisecond, and 4 random hex chars.
    """
    global _last_push_ms, _push_seq
    with _push_lock:
        now_ms = int(time.time() * 1000)
        if now_ms <= _last_push_ms:
            now_ms = _last_push_ms
        else:
            _last_push_ms = now_ms
            _push_seq = itertools.count()
        seq = next(_push_seq) % 1000
    return f"{now_ms:013d}{seq:03d}{secrets.token_hex(2)}"


@dataclass(eq=False)
class Subscription:
    """Handle returned by ``subscribe``. Pass it to ``unsubscribe``."""

    sub_id: int
    path: str
    callback: ValueCallback
    active: bool = True
    last_value: Any = field(default=_MISSING, repr=False)


@runtime_checkable
class SessionStore(Protocol):
    """Async hierarchical store with subscriptions."""

    async def get(self, path: str) -> Any: ...

    async def set(self, path: str, value: Any) -> None: ...

    async def update(self, path: str, values: dict[str, Any]) -> None: ...

    async def transaction(self, path: str, fn: TransactionFn) -> dict[str, Any] | None: ...

    async def push(self, path: str, value: Any) -> str: ...

    async def remove(self, path: str) -> None: ...

    async def query(self, path: str, child: str, equal_to: Any) -> dict[str, Any]: ...

    async def subscribe(self, path: str, callback: ValueCallback) -> Subscription: ...

    def unsubscribe(self, subscription: Subscription | None) -> None: ...

    async def close(self) -> None: ...


class SubscriptionHub:
    """Subscription bookkeeping shared by store backends."""

    def __init__(self) -> None:
        self._subs: dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    def add(self, path: str, callback: ValueCallback) -> Subscription:
        sub = Subscription(sub_id=next(self._ids), path=join_path(path), callback=callback)
        self._subs[sub.sub_id] = sub
        logger.debug("Subscribed #%d to %s (total: %d)", sub.sub_id, sub.path, len(self._subs))
        return sub

    def remove(self, subscription: Subscription | None) -> None:
        if subscription is None:
            return
        subscription.active = False
        if self._subs.pop(subscription.sub_id, None) is not None:
            logger.debug("Unsubscribed #%d from %s", subscription.sub_id, subscription.path)

    def clear(self) -> None:
        for sub in list(self._subs.values()):
            self.remove(sub)

    def __len__(self) -> int:
        return len(self._subs)

    async def deliver(self, sub: Subscription, value: Any) -> None:
        """Invoke the callback if ``value`` differs from the last delivery."""
        if not sub.active or (sub.last_value is not _MISSING and sub.last_value == value):
            return
        sub.last_value = copy.deepcopy(value)
        try:
            await sub.callback(copy.deepcopy(value))
        except Exception:
            # Listener failures never propagate into the writer
            logger.exception("Subscriber #%d on %s raised", sub.sub_id, sub.path)

    async def dispatch(self, changed_path: str, read: Callable[[str], Awaitable[Any]]) -> None:
        """Deliver fresh values to every subscription related to ``changed_path``."""
        for sub in list(self._subs.values()):
            if sub.active and paths_related(sub.path, changed_path):
                await self.deliver(sub, await read(sub.path))
