"""Wiring for a ready-to-use swipe controller."""

from __future__ import annotations

from typing import Optional

import httpx

from swipefeed import obs
from swipefeed.domain.swipe.api import SwipeApi
from swipefeed.domain.swipe.cache import SwipeFeedCache, get_swipe_feed_cache
from swipefeed.domain.swipe.controller import SwipeController
from swipefeed.domain.swipe.hooks import init_swipe_cache_wiper_hook
from swipefeed.domain.swipe.outbox import OutboxStore, get_outbox_store
from swipefeed.domain.swipe.photos import PhotoResolver, Signer
from swipefeed.domain.swipe.repository import FeedRepository, UserIdProvider
from swipefeed.maintenance.cache_wiper import CacheWiper


def build_swipe_controller(
	user_id_provider: UserIdProvider,
	*,
	http: Optional[httpx.AsyncClient] = None,
	signer: Optional[Signer] = None,
	cache: Optional[SwipeFeedCache] = None,
	outbox_store: Optional[OutboxStore] = None,
	wiper: Optional[CacheWiper] = None,
	start: bool = True,
) -> SwipeController:
	"""Create a controller over the shared cache and register the wipe hook.

	Must be called from a running event loop when ``start`` is true.
	"""
	obs.init()
	shared_cache = cache if cache is not None else get_swipe_feed_cache()
	store = outbox_store if outbox_store is not None else get_outbox_store()
	repo = FeedRepository(SwipeApi.from_settings(http), user_id_provider)
	controller = SwipeController(
		repo,
		cache=shared_cache,
		photos=PhotoResolver(signer),
		outbox=store,
	)
	init_swipe_cache_wiper_hook(wiper, cache=shared_cache, outbox_store=store, flush=controller.flush_outbox_now)
	if start:
		controller.start()
	return controller
