"""Domain-level exceptions for the swipe feed."""

from __future__ import annotations

from typing import Optional


class SwipeError(Exception):
	"""Base class for swipe feed errors."""

	reason: str = "unknown"

	def __init__(self, reason: str | None = None) -> None:
		super().__init__(reason or self.reason)
		if reason:
			self.reason = reason


class NotAuthenticated(SwipeError):
	reason = "not_authenticated"


class MalformedResponse(SwipeError):
	reason = "malformed_response"


class RemoteApiError(SwipeError):
	"""Remote call answered with an error status."""

	reason = "remote_error"

	def __init__(self, reason: str | None = None, *, status_code: Optional[int] = None) -> None:
		super().__init__(reason)
		self.status_code = status_code


class TransientApiError(RemoteApiError):
	"""Timeouts, throttling and 5xx answers; safe to retry."""

	reason = "transient"


class PermanentApiError(RemoteApiError):
	"""Auth, permission and validation failures; never retried."""

	reason = "permanent"
