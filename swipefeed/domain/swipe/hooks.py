"""Registration of the swipe feed with the global cache wiper."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from swipefeed.domain.swipe.cache import SwipeFeedCache, get_swipe_feed_cache
from swipefeed.domain.swipe.outbox import OutboxStore, SafeOutbox, get_outbox_store
from swipefeed.maintenance.cache_wiper import CacheWiper, cache_wiper
from swipefeed.settings import settings

logger = logging.getLogger(__name__)

FlushCallable = Callable[[], Awaitable[object]]


class SwipeCacheWipeHook:
	"""Zero-argument wipe hook; it never raises.

	``cache``, ``outbox_store`` and ``flush`` are read on every call, so a
	re-registration can point the hook at the live controller.
	"""

	def __init__(
		self,
		*,
		cache: Optional[SwipeFeedCache] = None,
		outbox_store: Optional[OutboxStore] = None,
		flush: Optional[FlushCallable] = None,
	) -> None:
		self.cache = cache
		self.outbox_store = outbox_store
		self.flush = flush

	def rebind(
		self,
		*,
		cache: Optional[SwipeFeedCache] = None,
		outbox_store: Optional[OutboxStore] = None,
		flush: Optional[FlushCallable] = None,
	) -> None:
		if cache is not None:
			self.cache = cache
		if outbox_store is not None:
			self.outbox_store = outbox_store
		if flush is not None:
			self.flush = flush

	async def __call__(self) -> None:
		target = self.cache if self.cache is not None else get_swipe_feed_cache()
		drop_pending = settings.wipe_drop_pending
		flush = self.flush
		try:
			if flush is not None and target.pending_count:
				# Give queued decisions one chance to land before local state goes
				await flush()
		except Exception:
			logger.warning("swipe_wipe.flush_failed", exc_info=True)
		try:
			target.wipe_all(
				keep_unswipe_overrides=True,
				keep_last_top_card_id=True,
				keep_pending=not drop_pending,
			)
			if drop_pending:
				store = self.outbox_store if self.outbox_store is not None else get_outbox_store()
				await SafeOutbox(store).clear()
		except Exception:
			logger.exception("swipe_wipe.failed")


_registered: dict[int, SwipeCacheWipeHook] = {}


def init_swipe_cache_wiper_hook(
	wiper: Optional[CacheWiper] = None,
	*,
	cache: Optional[SwipeFeedCache] = None,
	outbox_store: Optional[OutboxStore] = None,
	flush: Optional[FlushCallable] = None,
) -> SwipeCacheWipeHook:
	"""Register the swipe hook once per wiper; returns the registered hook.

	Calling again rebinds the existing hook, so the latest controller's flush wins.
	"""
	target = wiper if wiper is not None else cache_wiper
	existing = _registered.get(id(target))
	if existing is not None and existing in target.hooks:
		existing.rebind(cache=cache, outbox_store=outbox_store, flush=flush)
		return existing
	hook = SwipeCacheWipeHook(cache=cache, outbox_store=outbox_store, flush=flush)
	target.register_hook(hook)
	_registered[id(target)] = hook
	return hook
