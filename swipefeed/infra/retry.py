"""Bounded retry with exponential backoff for remote calls.

Wrapped tasks must be safe to repeat: a slow success can race a
timeout-triggered retry, so every operation routed through here is an
idempotent upsert on the server side.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from swipefeed.domain.swipe.exceptions import (
	MalformedResponse,
	NotAuthenticated,
	PermanentApiError,
	TransientApiError,
)
from swipefeed.obs import metrics as obs_metrics
from swipefeed.settings import settings

T = TypeVar("T")

logger = logging.getLogger(__name__)

_TRANSIENT_HINTS = (
	"timeout",
	"timed out",
	"network",
	"connection",
	"failed host lookup",
	"temporarily unavailable",
	"terminating connection",
	"503",
	"502",
	"gateway",
)
_PERMANENT_HINTS = ("permission denied", "violates", "invalid")


def default_should_retry(error: BaseException) -> bool:
	"""Classify an error as transient (retry) or permanent (fail fast)."""
	if isinstance(error, (PermanentApiError, NotAuthenticated, MalformedResponse)):
		return False
	if isinstance(error, (TransientApiError, asyncio.TimeoutError, TimeoutError, ConnectionError, httpx.TransportError)):
		return True
	message = str(error).lower()
	if any(hint in message for hint in _PERMANENT_HINTS):
		return False
	return any(hint in message for hint in _TRANSIENT_HINTS)


@dataclass(frozen=True)
class RetryPolicy:
	max_attempts: int = 4
	base_delay: float = 0.25
	max_delay: float = 5.0
	attempt_timeout: float = 15.0
	jitter_factor: float = 0.25
	should_retry: Callable[[BaseException], bool] = default_should_retry

	def __post_init__(self) -> None:
		if self.max_attempts < 1:
			raise ValueError("max_attempts must be >= 1")
		if not 0.0 <= self.jitter_factor <= 1.0:
			raise ValueError("jitter_factor must be within [0, 1]")

	@classmethod
	def from_settings(cls) -> "RetryPolicy":
		return cls(
			max_attempts=settings.retry_max_attempts,
			base_delay=settings.retry_base_delay_seconds,
			max_delay=settings.retry_max_delay_seconds,
			attempt_timeout=settings.retry_attempt_timeout_seconds,
			jitter_factor=settings.retry_jitter_factor,
		)


class RetriesExhausted(Exception):
	"""Raised when every allowed attempt failed with a retryable error."""

	def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
		super().__init__(f"{operation} failed after {attempts} attempts: {last_error!r}")
		self.operation = operation
		self.attempts = attempts
		self.last_error = last_error


class RetryExecutor:
	"""Runs coroutine factories with per-attempt timeouts and jittered backoff."""

	def __init__(
		self,
		policy: Optional[RetryPolicy] = None,
		*,
		sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
		rng: Optional[random.Random] = None,
	) -> None:
		self.policy = policy or RetryPolicy.from_settings()
		self._sleep = sleep
		self._rng = rng or random.Random()

	async def run(self, operation: str, task: Callable[[], Awaitable[T]]) -> T:
		policy = self.policy
		last_error: Optional[BaseException] = None
		for attempt in range(1, policy.max_attempts + 1):
			try:
				result = await asyncio.wait_for(task(), timeout=policy.attempt_timeout)
			except Exception as exc:
				last_error = exc
				if not policy.should_retry(exc):
					obs_metrics.inc_retry_attempt(operation, "fatal")
					raise
				obs_metrics.inc_retry_attempt(operation, "retryable")
				if attempt >= policy.max_attempts:
					break
				delay = self.next_delay(attempt)
				logger.info(
					"retry.scheduled",
					extra={"operation": operation, "attempt": attempt, "delay_s": round(delay, 3), "error": repr(exc)},
				)
				await self._sleep(delay)
				continue
			obs_metrics.inc_retry_attempt(operation, "ok")
			return result
		obs_metrics.inc_retry_exhausted(operation)
		logger.warning(
			"retry.exhausted",
			extra={"operation": operation, "attempts": policy.max_attempts, "error": repr(last_error)},
		)
		assert last_error is not None
		raise RetriesExhausted(operation, policy.max_attempts, last_error) from last_error

	def next_delay(self, attempt: int) -> float:
		"""Exponential delay for the wait after ``attempt`` (1-based), capped and jittered."""
		policy = self.policy
		capped = min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)
		jitter = 1.0 + policy.jitter_factor * (self._rng.random() * 2 - 1)
		return max(0.0, min(capped * jitter, policy.max_delay))
