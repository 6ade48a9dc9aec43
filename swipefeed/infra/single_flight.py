"""Coalesce concurrent calls into one shared in-flight task."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
	"""Only one job of a given kind runs at a time.

	Callers arriving while a job is in flight await that same job instead of
	starting another. Waiters are shielded: cancelling one caller does not
	cancel the shared work other callers are waiting on.
	"""

	def __init__(self) -> None:
		self._inflight: Optional[asyncio.Future[T]] = None

	@property
	def in_flight(self) -> bool:
		return self._inflight is not None

	async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
		future = self._inflight
		if future is None:
			future = asyncio.ensure_future(factory())
			self._inflight = future
			future.add_done_callback(self._release)
		return await asyncio.shield(future)

	def _release(self, future: "asyncio.Future[T]") -> None:
		if self._inflight is future:
			self._inflight = None
		# Mark the outcome as retrieved even if every waiter was cancelled
		if not future.cancelled():
			future.exception()
