"""Redis-backed SessionStore.

Layout:
- Each second-level node (``sessions/{id}``, ``users/{uid}``) is one JSON
  document under ``{prefix}:tree:{root}/{doc}``
- Writes below a document are optimistic read-modify-write transactions
  (WATCH/MULTI); a concurrent writer forces a retry, last write wins
- Every write publishes the changed path on ``{prefix}:changes``; a
  listener task fans notifications out to local subscriptions, and
  reconnects (then resyncs every subscription) if the pub/sub link drops

If Redis is unreachable, operations raise StoreError.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from safetrack.config import settings
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

_MAX_TRANSACTION_RETRIES = 20

_UNCHANGED = object()


def _descend(node: Any, segs: list[str]) -> Any:
    for seg in segs:
        if not isinstance(node, dict) or seg not in node:
            return None
        node = node[seg]
    return node


def _assign(doc: dict[str, Any] | None, segs: list[str], value: Any) -> dict[str, Any] | None:
    """Return ``doc`` with ``value`` written at ``segs`` (None deletes, pruning empties)."""
    doc = dict(doc or {})
    if value is None:
        trail = [doc]
        for seg in segs[:-1]:
            child = trail[-1].get(seg)
            if not isinstance(child, dict):
                return doc or None
            trail.append(child)
        trail[-1].pop(segs[-1], None)
        for depth in range(len(trail) - 1, 0, -1):
            if trail[depth]:
                break
            trail[depth - 1].pop(segs[depth - 1], None)
        return doc or None

    node = doc
    for seg in segs[:-1]:
        child = node.get(seg)
        if not isinstance(child, dict):
            child = {}
            node[seg] = child
        node = child
    node[segs[-1]] = value
    return doc


class RedisSessionStore:
    """Realtime tree persisted in Redis, with pub/sub change notifications."""

    def __init__(
        self,
        redis_url: str | None = None,
        key_prefix: str | None = None,
        client: aioredis.Redis | None = None,
        listener_retry_seconds: float = 1.0,
    ):
        self._redis = client or aioredis.from_url(redis_url or settings.redis_url, decode_responses=True)
        self._prefix = key_prefix or settings.key_prefix
        self._channel = f"{self._prefix}:changes"
        self._hub = SubscriptionHub()
        self._pubsub = None
        self._listener: asyncio.Task | None = None
        self.listener_retry_seconds = listener_retry_seconds

    # ── Keys ──────────────────────────────────────────────────────────────

    def _doc_key(self, root: str, doc: str) -> str:
        return f"{self._prefix}:tree:{root}/{doc}"

    def _collection_pattern(self, root: str) -> str:
        return f"{self._prefix}:tree:{root}/*"

    # ── Reads ─────────────────────────────────────────────────────────────

    async def _read_collection(self, root: str) -> dict[str, Any]:
        result: dict[str, Any] = {}
        async for key in self._redis.scan_iter(match=self._collection_pattern(root)):
            raw = await self._redis.get(key)
            if raw is not None:
                result[key.rsplit("/", 1)[-1]] = json.loads(raw)
        return result

    async def get(self, path: str) -> Any:
        segs = split_path(path)
        if not segs:
            raise StoreError("Cannot read the root of the tree")
        try:
            if len(segs) == 1:
                return await self._read_collection(segs[0]) or None
            raw = await self._redis.get(self._doc_key(segs[0], segs[1]))
        except RedisError as exc:
            raise StoreError(f"Read failed for {path}") from exc
        if raw is None:
            return None
        return _descend(json.loads(raw), segs[2:])

    async def query(self, path: str, child: str, equal_to: Any) -> dict[str, Any]:
        collection = await self.get(path) or {}
        return {
            key: value
            for key, value in collection.items()
            if isinstance(value, dict) and value.get(child) == equal_to
        }

    # ── Writes ────────────────────────────────────────────────────────────

    async def _mutate(self, key: str, fn: Callable[[Any], Any]) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(_MAX_TRANSACTION_RETRIES):
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    doc = fn(json.loads(raw) if raw is not None else None)
                    if doc is _UNCHANGED:
                        await pipe.unwatch()
                        return
                    pipe.multi()
                    if doc is None:
                        pipe.delete(key)
                    else:
                        pipe.set(key, json.dumps(doc, default=str))
                    await pipe.execute()
                    return
                except WatchError:
                    logger.debug("Concurrent write on %s, retrying", key)
                    continue
        raise StoreError(f"Gave up writing {key} after {_MAX_TRANSACTION_RETRIES} conflicts")

    async def _write(self, segs: list[str], value: Any) -> None:
        if len(segs) == 1:
            existing = await self._read_collection(segs[0])
            for doc in existing:
                await self._redis.delete(self._doc_key(segs[0], doc))
            for doc, doc_value in (value or {}).items():
                await self._redis.set(self._doc_key(segs[0], doc), json.dumps(doc_value, default=str))
        elif len(segs) == 2:
            key = self._doc_key(segs[0], segs[1])
            if value is None:
                await self._redis.delete(key)
            else:
                await self._redis.set(key, json.dumps(value, default=str))
        else:
            await self._mutate(self._doc_key(segs[0], segs[1]), lambda doc: _assign(doc, segs[2:], value))

    async def _publish(self, path: str) -> None:
        await self._redis.publish(self._channel, join_path(path))

    async def set(self, path: str, value: Any) -> None:
        segs = split_path(path)
        if not segs:
            raise StoreError("Cannot write to the root of the tree")
        try:
            await self._write(segs, value)
            await self._publish(path)
        except RedisError as exc:
            raise StoreError(f"Write failed for {path}") from exc

    async def update(self, path: str, values: dict[str, Any]) -> None:
        segs = split_path(path)
        try:
            if len(segs) >= 2:

                def apply(doc: Any) -> Any:
                    for child, value in values.items():
                        doc = _assign(doc, segs[2:] + split_path(child), value)
                    return doc

                await self._mutate(self._doc_key(segs[0], segs[1]), apply)
            else:
                for child, value in values.items():
                    await self._write(split_path(join_path(path, child)), value)
            await self._publish(path)
        except RedisError as exc:
            raise StoreError(f"Update failed for {path}") from exc

    async def transaction(self, path: str, fn: TransactionFn) -> dict[str, Any] | None:
        """Conditional update inside one WATCH/MULTI round. ``fn`` may run more than once."""
        segs = split_path(path)
        if len(segs) < 2:
            raise StoreError(f"Transactions need a document path, got {path!r}")
        written: dict[str, Any] | None = None

        def apply(doc: Any) -> Any:
            nonlocal written
            written = fn(_descend(doc, segs[2:]))
            if written is None:
                return _UNCHANGED
            for child, value in written.items():
                doc = _assign(doc, segs[2:] + split_path(child), value)
            return doc

        try:
            await self._mutate(self._doc_key(segs[0], segs[1]), apply)
            if written is not None:
                await self._publish(path)
        except RedisError as exc:
            raise StoreError(f"Transaction failed for {path}") from exc
        return written

    async def push(self, path: str, value: Any) -> str:
        key = generate_push_key()
        await self.set(join_path(path, key), value)
        return key

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    # ── Subscriptions ─────────────────────────────────────────────────────

    async def _ensure_listener(self) -> None:
        if self._listener is not None and not self._listener.done():
            return
        await self._open_pubsub()
        self._listener = asyncio.get_running_loop().create_task(self._listen())
        logger.info("Store change listener started on %s", self._channel)

    async def _open_pubsub(self) -> None:
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._channel)

    async def _drop_pubsub(self) -> None:
        if self._pubsub is None:
            return
        pubsub, self._pubsub = self._pubsub, None
        try:
            await pubsub.aclose()
        except RedisError:
            logger.debug("Error closing broken pub/sub connection", exc_info=True)

    async def _listen(self) -> None:
        try:
            while True:
                try:
                    if self._pubsub is None:
                        await self._open_pubsub()
                        # Changes published while disconnected were missed
                        await self._hub.dispatch("", self.get)
                        logger.info("Store change listener reconnected to %s", self._channel)
                    async for message in self._pubsub.listen():
                        if message.get("type") != "message":
                            continue
                        try:
                            await self._hub.dispatch(message["data"], self.get)
                        except StoreError:
                            logger.warning("Change dispatch failed for %s", message["data"], exc_info=True)
                    return
                except (RedisError, StoreError):
                    logger.exception(
                        "Store change listener lost its connection; retrying in %.1fs", self.listener_retry_seconds
                    )
                    await self._drop_pubsub()
                    await asyncio.sleep(self.listener_retry_seconds)
        except asyncio.CancelledError:
            logger.info("Store change listener stopped")
            raise

    async def subscribe(self, path: str, callback: ValueCallback) -> Subscription:
        try:
            await self._ensure_listener()
        except RedisError as exc:
            raise StoreError(f"Subscribe failed for {path}") from exc
        sub = self._hub.add(path, callback)
        await self._hub.deliver(sub, await self.get(sub.path))
        return sub

    def unsubscribe(self, subscription: Subscription | None) -> None:
        self._hub.remove(subscription)

    async def close(self) -> None:
        self._hub.clear()
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        await self._drop_pubsub()
        await self._redis.aclose()
