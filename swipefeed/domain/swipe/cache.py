"""Process-wide swipe feed cache.

Holds the append-only card buffer, the swiped-id ledger, the deduped pending
outbox, single-level undo memory, unswipe overrides and the last top card
anchor. One instance (``swipe_feed_cache``) is shared by every controller so
position and undo survive navigation; ``reset_if_key_changed`` and
``wipe_all`` are its lifecycle hooks.

Every method is synchronous. No mutation here awaits, so interleaved async
flows (top-up, swipe, flush, undo) always observe the invariants intact:

- no id appears twice in the buffer;
- ``add_all`` never inserts an id present in the ledger (only
  ``reinsert_for_undo`` may put a swiped id back);
- the outbox holds at most one entry per counterpart, newest decision wins;
- ``reset_if_key_changed`` is a no-op when the key is unchanged.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, Sequence

from swipefeed.domain.swipe.models import Card, PendingSwipe, UndoEntry, now_ms
from swipefeed.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

DEFAULT_MAX_SWIPED = 6000
DEFAULT_MAX_PENDING = 512
BIO_PREFIX_CHARS = 64

ResetListener = Callable[[], None]


class UndoStore:
	"""Remembers the last swipe only; the next swipe overwrites it."""

	def __init__(self) -> None:
		self._entry: Optional[UndoEntry] = None

	@property
	def has(self) -> bool:
		return self._entry is not None

	def push(self, entry: UndoEntry) -> None:
		self._entry = entry

	def peek(self) -> Optional[UndoEntry]:
		return self._entry

	def take(self, swipee_id: Optional[str] = None) -> Optional[UndoEntry]:
		"""Consume the entry; with ``swipee_id`` only when it matches."""
		entry = self._entry
		if entry is None:
			return None
		if swipee_id is not None and entry.swipee_id != swipee_id:
			return None
		self._entry = None
		return entry

	def discard(self, swipee_id: str) -> None:
		if self._entry is not None and self._entry.swipee_id == swipee_id:
			self._entry = None

	def clear(self) -> None:
		self._entry = None


class SwipeFeedCache:
	def __init__(self) -> None:
		self.cards: list[Card] = []
		# dict preserves insertion order: oldest first, most recent last
		self._swiped: dict[str, None] = {}
		self._buffered_ids: set[str] = set()
		self._pending: dict[str, PendingSwipe] = {}
		self._unswiped_overrides: set[str] = set()
		self._key: Optional[str] = None
		self._reset_listeners: list[ResetListener] = []
		self.undo = UndoStore()
		self.exhausted = False
		self.last_top_card_id: Optional[str] = None

	# ───────────────────────── session key

	@property
	def current_key(self) -> Optional[str]:
		return self._key

	def is_current_key(self, key: str) -> bool:
		return self._key == key

	def add_reset_listener(self, listener: ResetListener) -> None:
		if listener not in self._reset_listeners:
			self._reset_listeners.append(listener)

	def remove_reset_listener(self, listener: ResetListener) -> None:
		if listener in self._reset_listeners:
			self._reset_listeners.remove(listener)

	def reset_if_key_changed(self, new_key: str) -> bool:
		"""Invalidate session state when the key changes; returns True if it did.

		Undo memory, unswipe overrides and the top card anchor are kept.
		"""
		if self._key == new_key:
			return False
		logger.info(
			"swipe_cache.session_reset",
			extra={"cards": len(self.cards), "swiped": len(self._swiped), "pending": len(self._pending)},
		)
		self._key = new_key
		self._clear_session()
		obs_metrics.inc_session_reset()
		return True

	def _clear_session(self, *, keep_pending: bool = False) -> None:
		self.cards.clear()
		self._buffered_ids.clear()
		self._swiped.clear()
		if not keep_pending:
			self._pending.clear()
			obs_metrics.set_outbox_pending(0)
		self.exhausted = False
		for listener in list(self._reset_listeners):
			listener()

	# ───────────────────────── ledger

	@property
	def swiped_ids(self) -> list[str]:
		"""Ledger ids, oldest first."""
		return list(self._swiped)

	def is_swiped(self, card_id: str) -> bool:
		return card_id in self._swiped

	def record_swiped(self, card_id: str) -> None:
		"""Insert or move ``card_id`` to the most recent end of the ledger."""
		if not card_id:
			return
		self._swiped.pop(card_id, None)
		self._swiped[card_id] = None

	def forget_swiped(self, card_id: str) -> None:
		self._swiped.pop(card_id, None)

	def seed_swiped(self, ids: Iterable[str]) -> None:
		"""Replace the ledger with the server's list, then honour local unswipes."""
		self._swiped.clear()
		for card_id in ids:
			self.record_swiped(card_id)
		self.apply_unswipe_overrides()

	def add_unswipe_override(self, card_id: str) -> None:
		self._unswiped_overrides.add(card_id)

	def remove_unswipe_override(self, card_id: str) -> None:
		self._unswiped_overrides.discard(card_id)

	def apply_unswipe_overrides(self) -> None:
		for card_id in self._unswiped_overrides:
			self._swiped.pop(card_id, None)

	@property
	def unswipe_overrides(self) -> frozenset[str]:
		return frozenset(self._unswiped_overrides)

	# ───────────────────────── buffer

	def contains(self, card_id: str) -> bool:
		return card_id in self._buffered_ids

	def index_of(self, card_id: str) -> int:
		if card_id not in self._buffered_ids:
			return -1
		for idx, card in enumerate(self.cards):
			if card.id == card_id:
				return idx
		return -1

	def get(self, card_id: str) -> Optional[Card]:
		idx = self.index_of(card_id)
		return self.cards[idx] if idx >= 0 else None

	def add_all(self, incoming: Iterable[Card]) -> list[Card]:
		"""Append cards that are neither buffered nor swiped; returns those appended.

		Existing entries never move, so index ``i`` keeps its identity while
		the deck is on screen.
		"""
		added: list[Card] = []
		for card in incoming:
			card_id = card.id
			if not card_id:
				continue
			if card_id in self._swiped or card_id in self._buffered_ids:
				continue
			self.cards.append(card)
			self._buffered_ids.add(card_id)
			added.append(card)
		return added

	def consume_by_id(self, card_id: str) -> Optional[Card]:
		idx = self.index_of(card_id)
		if idx < 0:
			return None
		self._buffered_ids.discard(card_id)
		return self.cards.pop(idx)

	def trim_front(self, count: int) -> list[Card]:
		"""Drop the first ``count`` cards (consumed by the deck UI)."""
		if count <= 0:
			return []
		removed = self.cards[:count]
		del self.cards[:count]
		for card in removed:
			self._buffered_ids.discard(card.id)
		return removed

	def drop_swiped_from_buffer(self) -> int:
		"""Remove already-decided cards; only safe while no deck is on screen."""
		kept = [card for card in self.cards if card.id not in self._swiped]
		removed = len(self.cards) - len(kept)
		if removed:
			self.cards[:] = kept
			self._buffered_ids = {card.id for card in kept}
		return removed

	def replace_card(self, card: Card) -> bool:
		"""Swap in a new version of a buffered card at the same index."""
		idx = self.index_of(card.id)
		if idx < 0:
			return False
		self.cards[idx] = card
		return True

	def reinsert_for_undo(self, card: Card, index: int) -> int:
		"""Put a full snapshot back into the buffer; returns the clamped index.

		This is the only path allowed to buffer an id that was in the ledger:
		the id leaves the ledger as part of the same step.
		"""
		if not card.id:
			raise ValueError("card id is required")
		existing = self.index_of(card.id)
		if existing >= 0:
			del self.cards[existing]
		index = max(0, min(index, len(self.cards)))
		self.cards.insert(index, card)
		self._buffered_ids.add(card.id)
		self._swiped.pop(card.id, None)
		return index

	def dedupe_buffer(self) -> int:
		"""Collapse duplicate ids keeping the last occurrence; returns removed count."""
		seen: set[str] = set()
		kept: list[Card] = []
		for card in reversed(self.cards):
			if not card.id or card.id in seen:
				continue
			seen.add(card.id)
			kept.append(card)
		kept.reverse()
		removed = len(self.cards) - len(kept)
		self.cards[:] = kept
		self._buffered_ids = seen
		return removed

	# ───────────────────────── outbox

	def enqueue_pending(
		self,
		swipee_id: str,
		liked: bool,
		*,
		enqueued_at_ms: Optional[int] = None,
		swiper_id: Optional[str] = None,
	) -> PendingSwipe:
		"""Queue a decision; any earlier queued decision for the same id is replaced."""
		entry = PendingSwipe(
			swipee_id,
			liked,
			enqueued_at_ms if enqueued_at_ms is not None else now_ms(),
			swiper_id,
		)
		self._pending.pop(swipee_id, None)
		self._pending[swipee_id] = entry
		obs_metrics.set_outbox_pending(len(self._pending))
		return entry

	def remove_pending(self, swipee_id: str) -> Optional[PendingSwipe]:
		entry = self._pending.pop(swipee_id, None)
		obs_metrics.set_outbox_pending(len(self._pending))
		return entry

	def remove_pending_if_unchanged(self, entry: PendingSwipe) -> bool:
		"""Remove ``entry`` only if no newer decision replaced it meanwhile."""
		if self._pending.get(entry.swipee_id) != entry:
			return False
		self.remove_pending(entry.swipee_id)
		return True

	def get_pending(self, swipee_id: str) -> Optional[PendingSwipe]:
		return self._pending.get(swipee_id)

	def snapshot_pending(self, swiper_id: Optional[str] = None) -> list[PendingSwipe]:
		"""Copy of the outbox, oldest enqueue first.

		With ``swiper_id`` only that user's decisions are returned.
		"""
		entries = self._pending.values()
		if swiper_id is not None:
			entries = [p for p in entries if p.swiper_id == swiper_id]
		return sorted(entries, key=lambda p: p.enqueued_at_ms)

	def restore_pending(self, entries: Iterable[PendingSwipe]) -> int:
		"""Merge persisted decisions; the most recently enqueued per id wins."""
		restored = 0
		for entry in entries:
			current = self._pending.get(entry.swipee_id)
			if current is not None and current.enqueued_at_ms >= entry.enqueued_at_ms:
				continue
			self._pending[entry.swipee_id] = entry
			restored += 1
		obs_metrics.set_outbox_pending(len(self._pending))
		return restored

	@property
	def pending_count(self) -> int:
		return len(self._pending)

	# ───────────────────────── pruning & compaction

	def prune(self, max_swiped: int = DEFAULT_MAX_SWIPED, max_pending: int = DEFAULT_MAX_PENDING) -> list[str]:
		"""Bound ledger and outbox size, evicting oldest first.

		Returns the ids of pending entries that were dropped.
		"""
		overflow = len(self._swiped) - max(0, max_swiped)
		if overflow > 0:
			for card_id in list(self._swiped)[:overflow]:
				del self._swiped[card_id]
			obs_metrics.inc_pruned("swiped", overflow)

		dropped: list[str] = []
		overflow = len(self._pending) - max(0, max_pending)
		if overflow > 0:
			for entry in self.snapshot_pending()[:overflow]:
				del self._pending[entry.swipee_id]
				dropped.append(entry.swipee_id)
			obs_metrics.inc_pruned("pending", overflow)
			obs_metrics.set_outbox_pending(len(self._pending))
			logger.warning("swipe_cache.pending_pruned", extra={"dropped": len(dropped)})
		return dropped

	def compact_swiped_cards_in_cache(self, keep_full_ids: Iterable[str], *, bio_prefix: int = BIO_PREFIX_CHARS) -> int:
		"""Strip heavy fields from swiped buffered cards not listed in ``keep_full_ids``.

		The id survives; photos, interests and extra attributes are dropped and
		the bio is cut to a short prefix. Undo restores from the undo snapshot,
		never from a compacted entry. Returns the number of cards stripped.
		"""
		if not self.cards or not self._swiped:
			return 0
		keep = set(keep_full_ids)
		stripped = 0
		for idx, card in enumerate(self.cards):
			if card.id not in self._swiped or card.id in keep:
				continue
			updates: dict = {}
			if card.photos:
				updates["photos"] = []
			if card.raw_photos:
				updates["raw_photos"] = []
			if card.interests:
				updates["interests"] = []
			if card.attributes:
				updates["attributes"] = {}
			if card.bio and len(card.bio) > bio_prefix:
				updates["bio"] = f"{card.bio[:bio_prefix]}…"
			if updates:
				self.cards[idx] = card.model_copy(update=updates)
				stripped += 1
		obs_metrics.inc_compacted(stripped)
		return stripped

	# ───────────────────────── wiper

	def wipe_all(
		self,
		*,
		keep_unswipe_overrides: bool = True,
		keep_last_top_card_id: bool = True,
		keep_pending: bool = True,
	) -> None:
		"""Hard wipe of in-memory swipe state; forces a re-bootstrap.

		Queued swipes survive unless ``keep_pending=False``.
		"""
		self._clear_session(keep_pending=keep_pending)
		self._key = None
		self.undo.clear()
		if not keep_unswipe_overrides:
			self._unswiped_overrides.clear()
		if not keep_last_top_card_id:
			self.last_top_card_id = None

	# ───────────────────────── diagnostics

	def dump_state(self, max_items: int = 30, verbose: bool = False) -> str:
		def _head(values: Sequence[str]) -> str:
			shown = list(values[:max_items])
			if len(values) > max_items:
				shown.append(f"…(+{len(values) - max_items})")
			return ", ".join(shown)

		pending = [f"{p.swipee_id}:{'L' if p.liked else 'N'}" for p in self.snapshot_pending()]
		lines = [
			f"SwipeFeedCache{{ key={self._key or '-'}, exhausted={self.exhausted}, "
			f"cards={len(self.cards)}, swiped={len(self._swiped)}, pending={len(self._pending)}, "
			f"overrides={len(self._unswiped_overrides)}, top=\"{self.last_top_card_id or '-'}\" }}",
			f"  cards[0..]: {_head([c.id for c in self.cards])}",
			f"  swiped(oldest→newest): {_head(list(self._swiped))}",
			f"  pending: {_head(pending)}",
			f"  overrides: {_head(sorted(self._unswiped_overrides))}",
		]
		if verbose:
			for idx, card in enumerate(self.cards[:max_items]):
				lines.append(f"    #{idx} id={card.id} photos={len(card.photos)} interests={len(card.interests)}")
		return "\n".join(lines)


swipe_feed_cache = SwipeFeedCache()


def get_swipe_feed_cache() -> SwipeFeedCache:
	return swipe_feed_cache


def set_swipe_feed_cache(cache: SwipeFeedCache) -> SwipeFeedCache:
	"""Swap the process-wide instance (tests); returns the previous one."""
	global swipe_feed_cache
	previous = swipe_feed_cache
	swipe_feed_cache = cache
	return previous
