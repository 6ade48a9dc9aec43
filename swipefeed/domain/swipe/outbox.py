"""Durable storage for the pending-swipe outbox.

The in-memory cache stays the source of truth for the UI. The store mirrors it
per user so queued decisions survive a process restart (Redis backend) or a
preference change within the same process (both backends), and are replayed
on the next bootstrap.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Iterable, Optional, Protocol

from swipefeed.domain.swipe.models import PendingSwipe
from swipefeed.infra.redis import RedisProxy, redis_client
from swipefeed.obs import metrics as obs_metrics
from swipefeed.settings import settings

logger = logging.getLogger(__name__)


class OutboxStore(Protocol):
	async def put(self, user_id: str, entry: PendingSwipe) -> None: ...

	async def remove(self, user_id: str, swipee_ids: Iterable[str]) -> None: ...

	async def load(self, user_id: str) -> list[PendingSwipe]: ...

	async def clear(self, user_id: Optional[str] = None) -> None: ...


class MemoryOutboxStore:
	"""Process-local store; survives session resets but not a restart."""

	def __init__(self) -> None:
		self._entries: dict[str, dict[str, PendingSwipe]] = {}

	async def put(self, user_id: str, entry: PendingSwipe) -> None:
		self._entries.setdefault(user_id, {})[entry.swipee_id] = entry

	async def remove(self, user_id: str, swipee_ids: Iterable[str]) -> None:
		bucket = self._entries.get(user_id)
		if not bucket:
			return
		for swipee_id in swipee_ids:
			bucket.pop(swipee_id, None)
		if not bucket:
			self._entries.pop(user_id, None)

	async def load(self, user_id: str) -> list[PendingSwipe]:
		bucket = self._entries.get(user_id) or {}
		entries = [replace(entry, swiper_id=user_id) for entry in bucket.values()]
		return sorted(entries, key=lambda p: p.enqueued_at_ms)

	async def clear(self, user_id: Optional[str] = None) -> None:
		if user_id is None:
			self._entries.clear()
		else:
			self._entries.pop(user_id, None)


class RedisOutboxStore:
	"""One Redis hash per user: field = swipee id, value = JSON decision."""

	def __init__(self, redis: Optional[RedisProxy] = None, *, prefix: Optional[str] = None) -> None:
		self.redis = redis if redis is not None else redis_client
		self.prefix = prefix or settings.outbox_redis_prefix

	def _key(self, user_id: str) -> str:
		return f"{self.prefix}:{user_id}"

	async def put(self, user_id: str, entry: PendingSwipe) -> None:
		value = json.dumps({"liked": entry.liked, "enqueued_at_ms": entry.enqueued_at_ms}, separators=(",", ":"))
		await self.redis.hset(self._key(user_id), entry.swipee_id, value)

	async def remove(self, user_id: str, swipee_ids: Iterable[str]) -> None:
		ids = [swipee_id for swipee_id in swipee_ids if swipee_id]
		if ids:
			await self.redis.hdel(self._key(user_id), *ids)

	async def load(self, user_id: str) -> list[PendingSwipe]:
		raw = await self.redis.hgetall(self._key(user_id)) or {}
		entries: list[PendingSwipe] = []
		for swipee_id, value in raw.items():
			try:
				data = json.loads(value)
				entries.append(
					PendingSwipe(str(swipee_id), bool(data["liked"]), int(data["enqueued_at_ms"]), user_id)
				)
			except (ValueError, KeyError, TypeError):
				logger.warning("outbox_store.corrupt_entry", extra={"swipee_id": swipee_id})
		return sorted(entries, key=lambda p: p.enqueued_at_ms)

	async def clear(self, user_id: Optional[str] = None) -> None:
		if user_id is not None:
			await self.redis.delete(self._key(user_id))
			return
		keys = [key async for key in self.redis.scan_iter(match=f"{self.prefix}:*")]
		if keys:
			await self.redis.delete(*keys)


class SafeOutbox:
	"""Wraps a store so persistence failures are logged, counted and swallowed."""

	def __init__(self, store: OutboxStore) -> None:
		self.store = store

	async def put(self, user_id: Optional[str], entry: PendingSwipe) -> None:
		if not user_id:
			return
		try:
			await self.store.put(user_id, entry)
		except Exception:
			obs_metrics.inc_outbox_store_error("put")
			logger.exception("outbox_store.put_failed", extra={"swipee_id": entry.swipee_id})

	async def remove(self, user_id: Optional[str], swipee_ids: Iterable[str]) -> None:
		ids = list(swipee_ids)
		if not user_id or not ids:
			return
		try:
			await self.store.remove(user_id, ids)
		except Exception:
			obs_metrics.inc_outbox_store_error("remove")
			logger.exception("outbox_store.remove_failed", extra={"count": len(ids)})

	async def load(self, user_id: Optional[str]) -> list[PendingSwipe]:
		if not user_id:
			return []
		try:
			return await self.store.load(user_id)
		except Exception:
			obs_metrics.inc_outbox_store_error("load")
			logger.exception("outbox_store.load_failed")
			return []

	async def clear(self, user_id: Optional[str] = None) -> None:
		try:
			await self.store.clear(user_id)
		except Exception:
			obs_metrics.inc_outbox_store_error("clear")
			logger.exception("outbox_store.clear_failed")


_default_store: Optional[OutboxStore] = None


def build_outbox_store() -> OutboxStore:
	if settings.outbox_backend == "redis":
		return RedisOutboxStore()
	return MemoryOutboxStore()


def get_outbox_store() -> OutboxStore:
	"""Process-wide store, built from settings on first use."""
	global _default_store
	if _default_store is None:
		_default_store = build_outbox_store()
	return _default_store


def set_outbox_store(store: Optional[OutboxStore]) -> None:
	global _default_store
	_default_store = store
