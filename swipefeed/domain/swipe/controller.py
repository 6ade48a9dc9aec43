"""UI-facing swipe controller.

Combines the feed repository, the shared feed cache, the durable outbox and
photo resolution into one observable ``SwipeUiState``. Local state is the
source of truth for the UI: swipes and undos apply immediately and the remote
side is reconciled through the outbox.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Callable, Iterable, Mapping, Optional

from swipefeed.domain.swipe.cache import SwipeFeedCache, get_swipe_feed_cache
from swipefeed.domain.swipe.models import Card, SwipeResult, SwipeUiState, UndoEntry
from swipefeed.domain.swipe.outbox import OutboxStore, SafeOutbox, get_outbox_store
from swipefeed.domain.swipe.photos import PhotoResolver
from swipefeed.domain.swipe.repository import FeedRepository
from swipefeed.domain.swipe.session_key import session_key
from swipefeed.infra.single_flight import SingleFlight
from swipefeed.obs import logging as obs_logging
from swipefeed.obs import metrics as obs_metrics
from swipefeed.settings import settings

logger = logging.getLogger(__name__)

StateListener = Callable[[SwipeUiState], None]


class SwipeController:
	def __init__(
		self,
		repo: FeedRepository,
		*,
		cache: Optional[SwipeFeedCache] = None,
		photos: Optional[PhotoResolver] = None,
		outbox: Optional[OutboxStore] = None,
		flush_interval: Optional[float] = None,
		page_limit: Optional[int] = None,
		low_water_mark: Optional[int] = None,
		lookahead_full: Optional[int] = None,
		max_swiped: Optional[int] = None,
		max_pending: Optional[int] = None,
	) -> None:
		self.repo = repo
		self.cache = cache if cache is not None else get_swipe_feed_cache()
		self.photos = photos if photos is not None else PhotoResolver()
		self.outbox = SafeOutbox(outbox if outbox is not None else get_outbox_store())
		self.flush_interval = settings.outbox_flush_interval_seconds if flush_interval is None else flush_interval
		self.page_limit = settings.feed_page_limit if page_limit is None else page_limit
		self.low_water_mark = settings.feed_low_water_mark if low_water_mark is None else low_water_mark
		self.lookahead_full = settings.feed_lookahead_full if lookahead_full is None else lookahead_full
		self.max_swiped = settings.cache_max_swiped if max_swiped is None else max_swiped
		self.max_pending = settings.cache_max_pending if max_pending is None else max_pending

		self._state = SwipeUiState()
		self._listeners: list[StateListener] = []
		self._prefs: dict[str, Any] = {}
		self._initialized = False
		self._flush_task: Optional[asyncio.Task] = None
		self._single_bootstrap: SingleFlight[None] = SingleFlight()
		self._single_flush: SingleFlight[int] = SingleFlight()
		self._disposed = False

		# Cursor and buffer are invalidated together on every session reset
		self.cache.add_reset_listener(self.repo.reset)

	# ───────────────────────── state

	@property
	def state(self) -> SwipeUiState:
		return self._state

	@property
	def preferences(self) -> dict[str, Any]:
		return dict(self._prefs)

	@property
	def initialized(self) -> bool:
		return self._initialized

	def subscribe(self, listener: StateListener) -> Callable[[], None]:
		"""Register a state listener; returns a callable that unregisters it."""
		self._listeners.append(listener)

		def _unsubscribe() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _unsubscribe

	def _publish(self, **changes: Any) -> None:
		self._state = self._state.copy_with(**changes)
		for listener in list(self._listeners):
			try:
				listener(self._state)
			except Exception:
				logger.exception("swipe.listener_failed")

	def _publish_cards(self, **changes: Any) -> None:
		self._publish(cards=self.cache.cards, **changes)

	# ───────────────────────── lifecycle

	def start(self) -> None:
		"""Start the periodic outbox flush; idempotent."""
		if self._disposed or self.flush_interval <= 0:
			return
		if self._flush_task is None or self._flush_task.done():
			self._flush_task = asyncio.create_task(self._flush_loop(), name="swipe-outbox-flush")

	async def dispose(self) -> None:
		"""Cancel the flush timer and detach from the shared cache; closes the API."""
		self._disposed = True
		task = self._flush_task
		self._flush_task = None
		if task:
			task.cancel()
			with suppress(asyncio.CancelledError):
				await task
		self.cache.remove_reset_listener(self.repo.reset)
		self._listeners.clear()
		await self.repo.aclose()

	async def _flush_loop(self) -> None:
		while True:
			await asyncio.sleep(self.flush_interval)
			await self.flush_outbox_now()

	# ───────────────────────── bootstrap & top-up

	async def bootstrap_if_needed(self) -> None:
		# A wiped cache has no key and needs a fresh bootstrap
		if self._initialized and self.cache.current_key is not None:
			return
		await self.bootstrap_and_first_load()

	async def bootstrap_and_first_load(self) -> None:
		"""Bootstrap the session and load the first page.

		Concurrent calls share one in-flight bootstrap.
		"""
		await self._single_bootstrap.run(self._bootstrap_once)

	async def _bootstrap_once(self) -> None:
		me = self.repo.current_user_id()
		if not me:
			return
		tokens = obs_logging.bind_context(user_id=me, op="bootstrap")
		self._publish(fetching=True, error=None)
		try:
			boot = await self.repo.init(me)
			self._prefs = dict(boot.prefs)
			key = session_key(me, boot.prefs)
			self.cache.reset_if_key_changed(key)
			self.cache.seed_swiped(boot.swiped_ids)
			await self._restore_outbox(me)
			self.cache.drop_swiped_from_buffer()

			page = await self.repo.fetch_first(me, boot.prefs, self.page_limit, after_cursor=boot.cursor)
			resolved = await self._resolve_cards(page.items)
			if not self.cache.is_current_key(key):
				# Preferences changed or the cache was wiped while the page was in flight
				logger.info("swipe.bootstrap_superseded", extra={"cards": len(resolved)})
				self._publish(fetching=False)
				return
			added_ids = {card.id for card in self.cache.add_all(resolved)}
			# Buffer entries kept from an earlier visit still need current URLs
			for card in await self._resolve_cards(c for c in self.cache.cards if c.id not in added_ids):
				self.cache.replace_card(card)
			self.cache.exhausted = page.exhausted
			my_photo = await self.photos.resolve_maybe(boot.my_photo)

			self._publish_cards(
				fetching=False,
				exhausted=page.exhausted,
				my_photo=my_photo.url if my_photo else None,
			)
			self._initialized = True
			logger.info(
				"swipe.bootstrap_ok",
				extra={"cards": len(self.cache.cards), "swiped": len(boot.swiped_ids), "exhausted": page.exhausted},
			)
		except Exception as exc:
			logger.warning("swipe.bootstrap_failed", extra={"error": repr(exc)})
			self._publish(fetching=False, error="bootstrap_failed")
		finally:
			obs_logging.reset_context(tokens)

	async def _restore_outbox(self, user_id: str) -> None:
		persisted = await self.outbox.load(user_id)
		if not persisted:
			return
		restored = self.cache.restore_pending(persisted)
		for entry in persisted:
			self.cache.record_swiped(entry.swipee_id)
		logger.info("swipe.outbox_restored", extra={"count": restored})

	def _apply_preferences(self, me: str, prefs: Mapping[str, Any]) -> bool:
		"""Switch the session to ``prefs``; returns True when state was invalidated."""
		self._prefs = dict(prefs)
		if self.cache.reset_if_key_changed(session_key(me, prefs)):
			self._publish_cards(exhausted=False)
			return True
		return False

	async def top_up_if_needed(self, prefs: Optional[Mapping[str, Any]] = None, limit: Optional[int] = None) -> int:
		"""Fetch and append the next page; returns how many new cards became visible."""
		me = self.repo.current_user_id()
		if not me:
			return 0
		# New preferences take effect even while an older page is in flight
		if prefs is not None and self._apply_preferences(me, prefs):
			await self._restore_outbox(me)
		if self._state.fetching:
			return 0
		if self.repo.exhausted:
			logger.debug("swipe.top_up_skipped", extra={"reason": "exhausted"})
			return 0

		key = self.cache.current_key
		self._publish(fetching=True)
		collected: list[Card] = []
		try:
			await self.repo.top_up(self._prefs, self.page_limit if limit is None else limit, collected.extend)
			resolved = await self._resolve_cards(collected) if collected else []
			if self.cache.current_key != key:
				logger.info("swipe.top_up_superseded", extra={"cards": len(resolved)})
				self._publish(fetching=False)
				return 0
			added = self.cache.add_all(resolved) if resolved else []
			self.cache.exhausted = self.repo.exhausted
			self._publish_cards(fetching=False, exhausted=self.repo.exhausted, error=None)
			return len(added)
		except Exception as exc:
			logger.warning("swipe.top_up_failed", extra={"error": repr(exc)})
			obs_metrics.inc_top_up("failed")
			self._publish(fetching=False, error="top_up_failed")
			return 0

	async def maybe_top_up(self, visible_remaining: int) -> int:
		"""Top up once fewer than the low-water mark of cards remain."""
		if visible_remaining > self.low_water_mark:
			return 0
		return await self.top_up_if_needed()

	# ───────────────────────── swipe & undo

	async def swipe_card(self, swipee_id: str, liked: bool) -> Optional[SwipeResult]:
		"""Apply a decision locally, then try to deliver it.

		On failure the decision stays queued for the periodic flush; the
		result is None.
		"""
		me = self.repo.current_user_id()
		card = self.cache.get(swipee_id)
		if card is not None:
			self.cache.undo.push(UndoEntry(swipee_id, liked, card, self.cache.index_of(swipee_id)))
		else:
			# Undo must never target a decision older than the last swipe
			self.cache.undo.clear()
		entry = self.cache.enqueue_pending(swipee_id, liked, swiper_id=me)
		self.cache.record_swiped(swipee_id)
		await self.outbox.put(me, entry)

		result: Optional[SwipeResult] = None
		try:
			result = await self.repo.swipe(swipee_id, liked)
		except Exception as exc:
			obs_metrics.inc_swipe(liked, "queued")
			logger.info(
				"swipe.queued",
				extra={"swipee_id": swipee_id, "error": repr(exc), "pending": self.cache.pending_count},
			)
		else:
			obs_metrics.inc_swipe(liked, "sent")
			if self.cache.remove_pending_if_unchanged(entry):
				await self.outbox.remove(me, [swipee_id])
			# An undo that landed during the call keeps its override
			if self.cache.is_swiped(swipee_id):
				self.cache.remove_unswipe_override(swipee_id)
		await self._housekeeping(me)
		return result

	async def undo(self, swipee_id: Optional[str] = None) -> Optional[Card]:
		"""Undo the last swipe (or ``swipee_id``); local state is restored first.

		The remote undo is best-effort: the backend reconciles through the same
		idempotent (swiper, swipee) key if it fails. Returns the reinserted card.
		"""
		remembered = self.cache.undo.peek()
		target = swipee_id or (remembered.swipee_id if remembered else None)
		if not target:
			return None
		me = self.repo.current_user_id()

		self.cache.remove_pending(target)
		self.cache.forget_swiped(target)
		self.cache.add_unswipe_override(target)
		snapshot = self.cache.undo.take(target)
		card: Optional[Card] = None
		if snapshot is not None:
			self.cache.reinsert_for_undo(snapshot.card, snapshot.index)
			card = snapshot.card
		self._publish_cards(exhausted=False)
		await self.outbox.remove(me, [target])

		try:
			await self.repo.undo(target)
			obs_metrics.inc_undo("ok")
		except Exception as exc:
			obs_metrics.inc_undo("failed")
			logger.warning("swipe.undo_remote_failed", extra={"swipee_id": target, "error": repr(exc)})
		return card

	def reinsert_for_undo(self, card: Card, index: int) -> int:
		idx = self.cache.reinsert_for_undo(card, index)
		self._publish_cards(exhausted=False)
		return idx

	def trim_front(self, count: int) -> list[Card]:
		"""Drop cards the deck has consumed; undo keeps its own full snapshot."""
		removed = self.cache.trim_front(count)
		if removed:
			self._publish_cards()
		return removed

	def mark_top_card_id(self, card_id: Optional[str]) -> None:
		self.cache.last_top_card_id = card_id

	def mark_exhausted_if_depleted(self, visible_count: int) -> None:
		if visible_count == 0:
			self._publish(exhausted=True)

	# ───────────────────────── outbox

	async def flush_outbox_now(self) -> int:
		"""Send every queued decision in one batch; returns how many were confirmed."""
		if self._disposed:
			return 0
		return await self._single_flush.run(self._flush_once)

	async def _flush_once(self) -> int:
		me = self.repo.current_user_id()
		if not me:
			return 0
		# Decisions queued under another account wait for that account's session
		items = self.cache.snapshot_pending(swiper_id=me)
		if not items:
			return 0
		try:
			await self.repo.flush_batch(items)
		except Exception as exc:
			obs_metrics.inc_outbox_flush("failed")
			logger.warning("swipe.outbox.flush_failed", extra={"count": len(items), "error": repr(exc)})
			return 0
		confirmed = [item.swipee_id for item in items if self.cache.remove_pending_if_unchanged(item)]
		await self.outbox.remove(me, confirmed)
		obs_metrics.inc_outbox_flush("ok")
		logger.info("swipe.outbox.flushed", extra={"count": len(confirmed), "left": self.cache.pending_count})
		await self._housekeeping(me)
		return len(confirmed)

	# ───────────────────────── housekeeping

	async def _housekeeping(self, me: Optional[str]) -> None:
		dropped = self.cache.prune(self.max_swiped, self.max_pending)
		if dropped:
			await self.outbox.remove(me, dropped)
		if self.cache.compact_swiped_cards_in_cache(self._keep_full_ids(), bio_prefix=settings.cache_bio_prefix_chars):
			self._publish_cards()

	def _keep_full_ids(self) -> set[str]:
		keep: set[str] = set()
		remembered = self.cache.undo.peek()
		if remembered is not None:
			keep.add(remembered.swipee_id)
		cards = self.cache.cards
		top = self.cache.last_top_card_id
		start = self.cache.index_of(top) if top else -1
		if start < 0:
			start = next((i for i, c in enumerate(cards) if not self.cache.is_swiped(c.id)), len(cards))
		for card in cards[start : start + 1 + self.lookahead_full]:
			keep.add(card.id)
		return keep

	async def _resolve_cards(self, cards: Iterable[Card]) -> list[Card]:
		out: list[Card] = []
		for card in cards:
			sources = card.photo_refs
			if not sources:
				out.append(card)
				continue
			resolved = await self.photos.resolve_many(sources)
			out.append(card.model_copy(update={"photos": [p.url for p in resolved], "raw_photos": list(sources)}))
		return out
