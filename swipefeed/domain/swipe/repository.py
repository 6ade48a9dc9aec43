"""Cursor/exhaustion-aware feed repository with single-flight top-ups.

Pagination state resets whenever the preferences fingerprint changes, so a
cursor obtained under one filter set is never replayed under another.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from swipefeed.domain.swipe.exceptions import NotAuthenticated
from swipefeed.domain.swipe.models import Bootstrap, Card, FeedPage, PendingSwipe, SwipeResult
from swipefeed.domain.swipe.session_key import preferences_fingerprint
from swipefeed.infra.single_flight import SingleFlight
from swipefeed.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

UserIdProvider = Callable[[], Optional[str]]
ItemsCallback = Callable[[list[Card]], None]


class FeedApi(Protocol):
	async def init_bootstrap(self, user_id: str) -> Bootstrap: ...

	async def get_feed(
		self,
		*,
		user_id: str,
		prefs: Mapping[str, Any],
		after_cursor: Optional[str] = None,
		limit: int = 20,
	) -> FeedPage: ...

	async def handle_swipe_atomic(self, *, swiper_id: str, swipee_id: str, liked: bool) -> SwipeResult: ...

	async def undo_swipe(self, *, swiper_id: str, swipee_id: str) -> None: ...

	async def handle_swipe_batch(self, *, swiper_id: str, items: Sequence[PendingSwipe]) -> None: ...

	async def aclose(self) -> None: ...


class FeedRepository:
	def __init__(self, api: FeedApi, user_id_provider: UserIdProvider) -> None:
		self.api = api
		self._current_user = user_id_provider
		self._cursor: Optional[str] = None
		self._exhausted = False
		self._last_prefs_fingerprint: Optional[str] = None
		# Bumped by reset(); a request started under an older generation is stale
		self._generation = 0
		self._single_top_up: SingleFlight[int] = SingleFlight()

	@property
	def cursor(self) -> Optional[str]:
		return self._cursor

	@property
	def exhausted(self) -> bool:
		return self._exhausted

	@property
	def last_preferences_fingerprint(self) -> Optional[str]:
		return self._last_prefs_fingerprint

	@property
	def generation(self) -> int:
		return self._generation

	@property
	def top_up_in_flight(self) -> bool:
		return self._single_top_up.in_flight

	def current_user_id(self) -> Optional[str]:
		return self._current_user()

	def reset(self) -> None:
		"""Blow away local pagination state (filters changed, user switched, cache wiped).

		A page still in flight is discarded when it lands, and new callers do not
		join it.
		"""
		self._generation += 1
		self._cursor = None
		self._exhausted = False
		self._last_prefs_fingerprint = None
		self._single_top_up = SingleFlight()

	async def init(self, user_id: str) -> Bootstrap:
		return await self.api.init_bootstrap(user_id)

	async def fetch_first(
		self,
		user_id: str,
		prefs: Mapping[str, Any],
		limit: int = 20,
		*,
		after_cursor: Optional[str] = None,
	) -> FeedPage:
		"""Unconditional fetch used right after a session reset.

		A page that lands after another reset is returned but leaves pagination
		state untouched.
		"""
		generation = self._generation
		self._last_prefs_fingerprint = preferences_fingerprint(prefs)
		page = await self.api.get_feed(user_id=user_id, prefs=prefs, after_cursor=after_cursor, limit=limit)
		if generation != self._generation:
			obs_metrics.inc_top_up("stale")
			logger.info("feed.stale_page_dropped", extra={"kind": "first"})
			return page
		self._cursor = page.next_cursor
		self._exhausted = page.exhausted
		obs_metrics.observe_feed_page("first", len(page.items))
		return page

	async def top_up(self, prefs: Mapping[str, Any], limit: int, on_items: ItemsCallback) -> int:
		"""Fetch the next page; concurrent callers share one request and one result.

		Returns the number of items handed to ``on_items``; a page that lands
		after ``reset()`` is dropped and counts as 0.
		"""
		if self._single_top_up.in_flight:
			obs_metrics.inc_top_up("coalesced")
		return await self._single_top_up.run(lambda: self._top_up_once(prefs, limit, on_items))

	async def _top_up_once(self, prefs: Mapping[str, Any], limit: int, on_items: ItemsCallback) -> int:
		fingerprint = preferences_fingerprint(prefs)
		if self._last_prefs_fingerprint != fingerprint:
			logger.info("feed.prefs_changed", extra={"had_cursor": self._cursor is not None})
			self._cursor = None
			self._exhausted = False
			self._last_prefs_fingerprint = fingerprint

		if self._exhausted:
			obs_metrics.inc_top_up("exhausted")
			return 0

		me = self._current_user()
		if not me:
			return 0

		generation = self._generation
		page = await self.api.get_feed(user_id=me, prefs=prefs, after_cursor=self._cursor, limit=limit)
		if generation != self._generation:
			obs_metrics.inc_top_up("stale")
			logger.info("feed.stale_page_dropped", extra={"kind": "top_up", "items": len(page.items)})
			return 0
		self._cursor = page.next_cursor
		self._exhausted = page.exhausted
		obs_metrics.observe_feed_page("top_up", len(page.items))
		obs_metrics.inc_top_up("fetched")

		if page.items:
			on_items(page.items)
		return len(page.items)

	async def swipe(self, swipee_id: str, liked: bool) -> SwipeResult:
		me = self._require_user()
		return await self.api.handle_swipe_atomic(swiper_id=me, swipee_id=swipee_id, liked=liked)

	async def undo(self, swipee_id: str) -> None:
		me = self._require_user()
		await self.api.undo_swipe(swiper_id=me, swipee_id=swipee_id)

	async def flush_batch(self, items: Sequence[PendingSwipe]) -> None:
		"""Persist queued decisions in one round trip; returns once the server acked."""
		me = self._current_user()
		if not me or not items:
			return
		await self.api.handle_swipe_batch(swiper_id=me, items=items)

	async def aclose(self) -> None:
		await self.api.aclose()

	def _require_user(self) -> str:
		me = self._current_user()
		if not me:
			raise NotAuthenticated()
		return me
