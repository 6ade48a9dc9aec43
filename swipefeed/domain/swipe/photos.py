"""Photo reference resolution with memoization and expiry-aware re-signing.

Raw references come in three shapes: ``http(s)`` URLs, ``storage://bucket/path``
and bare object paths in the default bucket. Signing itself is an external
collaborator injected as ``signer``; this module only decides when to call it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional
from urllib.parse import parse_qs, unquote, urlparse, urlunparse

from swipefeed.obs import metrics as obs_metrics
from swipefeed.settings import settings

logger = logging.getLogger(__name__)

Signer = Callable[[str, str, int], Awaitable[str]]

_STORAGE_SCHEME = "storage://"
_OBJECT_KINDS = ("public", "sign", "authenticated")


@dataclass(frozen=True)
class ResolvedPhoto:
	url: str
	# Stable cache key (bucket/path, or the URL without its query string)
	cache_key: str


def _is_http(value: str) -> bool:
	return value.startswith("http://") or value.startswith("https://")


def parse_storage_url(url: str) -> Optional[tuple[str, str]]:
	"""Extract (bucket, path) from ``/storage/v1/object/<kind>/<bucket>/<path>``."""
	segments = [seg for seg in urlparse(url).path.split("/") if seg]
	if "object" not in segments:
		return None
	rest = segments[segments.index("object") + 1 :]
	if rest and rest[0] in _OBJECT_KINDS:
		rest = rest[1:]
	if len(rest) < 2:
		return None
	return rest[0], "/".join(unquote(seg) for seg in rest[1:])


def parse_storage_ref(raw: str, default_bucket: str) -> Optional[tuple[str, str]]:
	"""``storage://bucket/path`` or ``storage://path`` (default bucket)."""
	if not raw.startswith(_STORAGE_SCHEME):
		return None
	body = raw[len(_STORAGE_SCHEME) :].lstrip("/")
	head, sep, rest = body.partition("/")
	if not sep:
		return (default_bucket, head) if head else None
	if not rest:
		return None
	return head, rest


def is_signed_and_expired(url: str, *, now: Optional[float] = None) -> bool:
	"""True for a storage URL with no token or with an ``expires``/``exp`` in the past."""
	query = parse_qs(urlparse(url).query)
	if "token" not in query and "t" not in query:
		return True
	raw_exp = (query.get("expires") or query.get("exp") or [None])[0]
	try:
		expires = int(raw_exp) if raw_exp is not None else None
	except ValueError:
		return False
	if expires is None:
		return False
	return (now if now is not None else time.time()) >= expires


def stable_key(url: str) -> str:
	"""Prefer bucket/path for storage URLs; otherwise drop the query string."""
	parsed = parse_storage_url(url) if "/storage/v1/object/" in url else None
	if parsed:
		bucket, path = parsed
		return f"{bucket}/{path}"
	parts = urlparse(url)
	return urlunparse(parts._replace(query="", fragment=""))


class PhotoResolver:
	def __init__(
		self,
		signer: Optional[Signer] = None,
		*,
		use_signed_urls: Optional[bool] = None,
		public_base_url: Optional[str] = None,
		default_bucket: Optional[str] = None,
		sign_ttl_seconds: Optional[int] = None,
	) -> None:
		self._signer = signer
		self.use_signed_urls = settings.photo_signed_urls if use_signed_urls is None else use_signed_urls
		self.public_base_url = (public_base_url or settings.api_base_url).rstrip("/")
		self.default_bucket = default_bucket or settings.photo_default_bucket
		self.sign_ttl_seconds = settings.photo_sign_ttl_seconds if sign_ttl_seconds is None else sign_ttl_seconds
		self._resolved_by_raw: dict[str, ResolvedPhoto] = {}

	def clear(self) -> None:
		self._resolved_by_raw.clear()

	def __len__(self) -> int:
		return len(self._resolved_by_raw)

	async def resolve_photo(self, raw: str) -> ResolvedPhoto:
		if not raw:
			return ResolvedPhoto(raw, raw)

		memo = self._resolved_by_raw.get(raw)
		if memo is not None and not self._needs_refresh(memo.url):
			obs_metrics.inc_photo_resolution("hit")
			return memo

		target = self._target_for(raw)
		if target is None:
			# Plain external URL: nothing to sign
			resolved = ResolvedPhoto(raw, stable_key(raw) if _is_http(raw) else raw)
			self._resolved_by_raw[raw] = resolved
			obs_metrics.inc_photo_resolution("passthrough")
			return resolved

		bucket, path = target
		try:
			url = await self._url_for(bucket, path)
		except Exception:
			obs_metrics.inc_photo_resolution("failure")
			logger.warning("photo.resolve_failed", extra={"bucket": bucket}, exc_info=True)
			return ResolvedPhoto(raw, f"{bucket}/{path}")
		resolved = ResolvedPhoto(url, f"{bucket}/{path}")
		self._resolved_by_raw[raw] = resolved
		obs_metrics.inc_photo_resolution("miss")
		return resolved

	async def resolve_many(self, raws: Iterable[str]) -> list[ResolvedPhoto]:
		return [await self.resolve_photo(raw) for raw in raws]

	async def resolve_maybe(self, raw: Optional[str]) -> Optional[ResolvedPhoto]:
		if not raw:
			return None
		return await self.resolve_photo(raw)

	def _needs_refresh(self, url: str) -> bool:
		if not self.use_signed_urls or "/storage/v1/object/sign/" not in url:
			return False
		return is_signed_and_expired(url)

	def _target_for(self, raw: str) -> Optional[tuple[str, str]]:
		if raw.startswith(_STORAGE_SCHEME):
			return parse_storage_ref(raw, self.default_bucket)
		if _is_http(raw):
			if "/storage/v1/object/" not in raw:
				return None
			# Signed storage URLs with a live token can be used as-is
			if "/storage/v1/object/sign/" in raw and not is_signed_and_expired(raw):
				return None
			if "/storage/v1/object/public/" in raw and not self.use_signed_urls:
				return None
			return parse_storage_url(raw)
		return self.default_bucket, raw.lstrip("/")

	async def _url_for(self, bucket: str, path: str) -> str:
		path = path.lstrip("/")
		if self.use_signed_urls:
			if self._signer is None:
				raise RuntimeError("signed photo URLs require a signer")
			return await self._signer(bucket, path, self.sign_ttl_seconds)
		return f"{self.public_base_url}/storage/v1/object/public/{bucket}/{path}"
