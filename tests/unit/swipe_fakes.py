"""Shared fakes for swipe feed unit tests."""

import asyncio
from typing import Any, Mapping, Optional, Sequence

from swipefeed.domain.swipe.models import Bootstrap, Card, FeedPage, PendingSwipe, SwipeResult


def make_card(card_id: str, **fields: Any) -> Card:
    fields.setdefault("name", f"user {card_id}")
    return Card(id=card_id, **fields)


def make_page(*ids: str, cursor: Optional[str] = None, exhausted: bool = False) -> FeedPage:
    return FeedPage(items=[make_card(i) for i in ids], next_cursor=cursor, exhausted=exhausted)


class FakeFeedApi:
    """In-memory stand-in for the remote RPC service.

    ``pages`` are served in order; an exception in the list is raised instead.
    Set ``feed_gate``, ``swipe_gate`` or ``batch_gate`` to hold those requests until
    the event is set. A held feed request has already taken its page.
    """

    def __init__(self) -> None:
        self.bootstrap = Bootstrap()
        self.pages: list[Any] = []
        self.feed_calls: list[dict[str, Any]] = []
        self.feed_gate: Optional[asyncio.Event] = None
        self.swipe_gate: Optional[asyncio.Event] = None
        self.batch_gate: Optional[asyncio.Event] = None
        self.swipes: list[tuple[str, str, bool]] = []
        self.undos: list[tuple[str, str]] = []
        self.batches: list[list[PendingSwipe]] = []
        self.swipe_error: Optional[Exception] = None
        self.undo_error: Optional[Exception] = None
        self.batch_error: Optional[Exception] = None
        self.bootstrap_error: Optional[Exception] = None
        self.closed = False

    async def init_bootstrap(self, user_id: str) -> Bootstrap:
        if self.bootstrap_error is not None:
            raise self.bootstrap_error
        return self.bootstrap

    async def get_feed(
        self,
        *,
        user_id: str,
        prefs: Mapping[str, Any],
        after_cursor: Optional[str] = None,
        limit: int = 20,
    ) -> FeedPage:
        self.feed_calls.append({"user_id": user_id, "prefs": dict(prefs), "after": after_cursor, "limit": limit})
        item = self.pages.pop(0) if self.pages else FeedPage(exhausted=True)
        if self.feed_gate is not None:
            await self.feed_gate.wait()
        if isinstance(item, Exception):
            raise item
        return item

    async def handle_swipe_atomic(self, *, swiper_id: str, swipee_id: str, liked: bool) -> SwipeResult:
        self.swipes.append((swiper_id, swipee_id, liked))
        if self.swipe_gate is not None:
            await self.swipe_gate.wait()
        if self.swipe_error is not None:
            raise self.swipe_error
        return SwipeResult()

    async def undo_swipe(self, *, swiper_id: str, swipee_id: str) -> None:
        self.undos.append((swiper_id, swipee_id))
        if self.undo_error is not None:
            raise self.undo_error

    async def handle_swipe_batch(self, *, swiper_id: str, items: Sequence[PendingSwipe]) -> None:
        self.batches.append(list(items))
        if self.batch_gate is not None:
            await self.batch_gate.wait()
        if self.batch_error is not None:
            raise self.batch_error

    async def aclose(self) -> None:
        self.closed = True

