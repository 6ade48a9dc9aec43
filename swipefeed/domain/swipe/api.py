"""RPC adapter for the remote feed/swipe service with retry and backoff."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Sequence

import httpx

from swipefeed.domain.swipe.exceptions import MalformedResponse, PermanentApiError, TransientApiError
from swipefeed.domain.swipe.models import Bootstrap, FeedPage, PendingSwipe, SwipeResult
from swipefeed.infra.retry import RetryExecutor
from swipefeed.settings import settings

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = frozenset({408, 425, 429})


def _raise_for_status(response: httpx.Response, operation: str) -> None:
	status = response.status_code
	if status < 400:
		return
	detail = response.text[:200] if response.text else ""
	reason = f"{operation}:{status}"
	if status >= 500 or status in _TRANSIENT_STATUSES:
		raise TransientApiError(reason, status_code=status)
	logger.warning("swipe_api.rejected", extra={"operation": operation, "status": status, "detail": detail})
	raise PermanentApiError(reason, status_code=status)


def _decode(response: httpx.Response, operation: str) -> Any:
	if not response.content:
		return None
	try:
		return response.json()
	except ValueError as exc:
		raise MalformedResponse(f"{operation}:invalid_json") from exc


def _as_single_row(data: Any, operation: str) -> Mapping[str, Any]:
	row = _as_single_row_or_none(data)
	if row is None:
		raise MalformedResponse(f"{operation}:empty")
	return row


def _as_single_row_or_none(data: Any) -> Optional[Mapping[str, Any]]:
	if data is None:
		return None
	if isinstance(data, list):
		data = data[0] if data else None
	if data is None:
		return None
	if not isinstance(data, Mapping):
		raise MalformedResponse("row_not_object")
	return data


class SwipeApi:
	"""Thin client over the feed RPC functions; every call goes through the retry executor."""

	def __init__(
		self,
		http: httpx.AsyncClient,
		*,
		retry: Optional[RetryExecutor] = None,
		rpc_path: str = "/rest/v1/rpc",
		owns_http: bool = False,
	) -> None:
		self.http = http
		# Only a client built here is closed by aclose(); injected ones belong to the caller
		self.owns_http = owns_http
		self.retry = retry if retry is not None else RetryExecutor()
		self.rpc_path = rpc_path.rstrip("/")

	@classmethod
	def from_settings(cls, http: Optional[httpx.AsyncClient] = None) -> "SwipeApi":
		if http is not None:
			return cls(http, rpc_path=settings.api_rpc_path)
		headers = {}
		if settings.api_key:
			headers = {"apikey": settings.api_key, "Authorization": f"Bearer {settings.api_key}"}
		http = httpx.AsyncClient(base_url=settings.api_base_url, headers=headers)
		return cls(http, rpc_path=settings.api_rpc_path, owns_http=True)

	async def _rpc(self, name: str, params: Mapping[str, Any]) -> Any:
		async def _call() -> Any:
			response = await self.http.post(f"{self.rpc_path}/{name}", json=dict(params))
			_raise_for_status(response, name)
			return _decode(response, name)

		return await self.retry.run(name, _call)

	async def init_bootstrap(self, user_id: str) -> Bootstrap:
		data = await self._rpc("init_swipe_bootstrap", {"user_id_arg": user_id})
		return Bootstrap.from_row(_as_single_row(data, "init_swipe_bootstrap"))

	async def get_feed(
		self,
		*,
		user_id: str,
		prefs: Mapping[str, Any],
		after_cursor: Optional[str] = None,
		limit: int = 20,
	) -> FeedPage:
		data = await self._rpc(
			"get_feed",
			{
				"user_id_arg": user_id,
				"prefs_arg": dict(prefs),
				"after_arg": after_cursor,
				"limit_arg": limit,
			},
		)
		return FeedPage.from_row(_as_single_row(data, "get_feed"))

	async def handle_swipe_atomic(self, *, swiper_id: str, swipee_id: str, liked: bool) -> SwipeResult:
		data = await self._rpc(
			"handle_swipe_atomic",
			{"swiper_id_arg": swiper_id, "swipee_id_arg": swipee_id, "liked_arg": liked},
		)
		return SwipeResult.from_row(_as_single_row_or_none(data))

	async def undo_swipe(self, *, swiper_id: str, swipee_id: str) -> None:
		await self._rpc("undo_swipe", {"swiper_id_arg": swiper_id, "swipee_id_arg": swipee_id})

	async def handle_swipe_batch(self, *, swiper_id: str, items: Sequence[PendingSwipe]) -> None:
		if not items:
			return
		await self._rpc(
			"handle_swipe_batch",
			{"swiper_id_arg": swiper_id, "items_arg": [item.to_payload() for item in items]},
		)

	async def aclose(self) -> None:
		if self.owns_http and not self.http.is_closed:
			await self.http.aclose()
