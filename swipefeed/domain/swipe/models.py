"""Models for the swipe feed: cards, feed pages, swipe results and local state."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


def _list_of_str(value: Any) -> list[str]:
	if not isinstance(value, (list, tuple)):
		return []
	out: list[str] = []
	for item in value:
		text = "" if item is None else str(item).strip()
		if text:
			out.append(text)
	return out


def _to_int(value: Any) -> Optional[int]:
	if value is None or isinstance(value, bool):
		return None
	if isinstance(value, int):
		return value
	try:
		return int(str(value).strip())
	except ValueError:
		return None


def _to_datetime(value: Any) -> Optional[datetime]:
	if isinstance(value, datetime):
		return value
	text = "" if value is None else str(value).strip()
	if not text:
		return None
	try:
		return datetime.fromisoformat(text.replace("Z", "+00:00"))
	except ValueError:
		return None


def _optional_text(value: Any) -> Optional[str]:
	text = "" if value is None else str(value)
	return text if text else None


def now_ms() -> int:
	return int(time.time() * 1000)


_KNOWN_CARD_KEYS = frozenset(
	{
		"potential_match_id",
		"user_id",
		"id",
		"name",
		"age",
		"bio",
		"photos",
		"profile_pictures",
		"raw_photos",
		"is_online",
		"last_seen",
		"distance",
		"interests",
	}
)


class Card(BaseModel):
	"""One candidate profile from the feed.

	``id`` is the identity; everything else is display payload. ``raw_photos``
	holds the original photo references so a single photo can be re-signed
	later, ``photos`` the resolved URLs the UI renders.
	"""

	model_config = ConfigDict(frozen=True)

	id: str
	name: str = "User"
	age: Optional[int] = None
	bio: Optional[str] = None
	photos: list[str] = Field(default_factory=list)
	raw_photos: list[str] = Field(default_factory=list)
	is_online: bool = False
	last_seen: Optional[datetime] = None
	distance: Optional[str] = None
	interests: list[str] = Field(default_factory=list)
	attributes: dict[str, Any] = Field(default_factory=dict)

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "Card":
		"""Tolerant parse of a feed row; a row without an id yields ``id == ""``."""
		raws = _list_of_str(row.get("photos") or row.get("profile_pictures") or row.get("raw_photos"))
		card_id = row.get("potential_match_id") or row.get("user_id") or row.get("id") or ""
		name = row.get("name")
		return cls(
			id=str(card_id).strip(),
			name=str(name) if name not in (None, "") else "User",
			age=_to_int(row.get("age")),
			bio=_optional_text(row.get("bio")),
			photos=raws,
			raw_photos=list(raws),
			is_online=row.get("is_online") is True,
			last_seen=_to_datetime(row.get("last_seen")),
			distance=_optional_text(row.get("distance")),
			interests=_list_of_str(row.get("interests")),
			attributes={k: v for k, v in row.items() if k not in _KNOWN_CARD_KEYS},
		)

	@property
	def photo_refs(self) -> list[str]:
		return self.raw_photos or self.photos

	def to_cache_map(self) -> dict[str, Any]:
		return {
			"potential_match_id": self.id,
			"name": self.name,
			"age": self.age,
			"bio": self.bio,
			"photos": list(self.photos),
			"raw_photos": list(self.raw_photos),
			"is_online": self.is_online,
			"last_seen": self.last_seen.isoformat() if self.last_seen else None,
			"distance": self.distance,
			"interests": list(self.interests),
			**self.attributes,
		}


class MatchLite(BaseModel):
	id: str
	name: str = "User"
	photo_url: Optional[str] = None

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "MatchLite":
		pics = _list_of_str(row.get("profile_pictures"))
		name = row.get("name")
		return cls(
			id=str(row.get("user_id") or ""),
			name=str(name) if name not in (None, "") else "User",
			photo_url=pics[0] if pics else None,
		)


class SwipeResult(BaseModel):
	created_match: bool = False
	me: Optional[MatchLite] = None
	other: Optional[MatchLite] = None

	@classmethod
	def from_row(cls, row: Optional[Mapping[str, Any]]) -> "SwipeResult":
		if not row:
			return cls()
		me = row.get("me")
		other = row.get("other")
		return cls(
			created_match=row.get("created_match") is True,
			me=MatchLite.from_row(me) if isinstance(me, Mapping) else None,
			other=MatchLite.from_row(other) if isinstance(other, Mapping) else None,
		)


class Bootstrap(BaseModel):
	"""Session bootstrap: own photos, stored preferences, server-side swipe ledger."""

	my_photo: Optional[str] = None
	my_photos: list[str] = Field(default_factory=list)
	prefs: dict[str, Any] = Field(default_factory=dict)
	swiped_ids: list[str] = Field(default_factory=list)
	cursor: Optional[str] = None

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "Bootstrap":
		profile = row.get("profile") if isinstance(row.get("profile"), Mapping) else {}
		pics = _list_of_str(profile.get("profile_pictures"))
		prefs = row.get("prefs")
		cursor = row.get("cursor")
		return cls(
			my_photo=pics[0] if pics else None,
			my_photos=pics,
			prefs=dict(prefs) if isinstance(prefs, Mapping) else {},
			swiped_ids=_list_of_str(row.get("swiped_ids")),
			cursor=str(cursor) if cursor else None,
		)


class FeedPage(BaseModel):
	items: list[Card] = Field(default_factory=list)
	next_cursor: Optional[str] = None
	exhausted: bool = False

	@classmethod
	def from_row(cls, row: Mapping[str, Any]) -> "FeedPage":
		raw_items = row.get("items") or []
		items = [Card.from_row(item) for item in raw_items if isinstance(item, Mapping)]
		cursor = row.get("next_cursor")
		return cls(
			items=items,
			next_cursor=str(cursor) if cursor else None,
			exhausted=row.get("exhausted") is True,
		)


@dataclass(slots=True, frozen=True)
class PendingSwipe:
	"""A swipe decision not yet confirmed by the backend.

	``swiper_id`` is the user who made the decision; a flush only ever sends
	entries owned by the signed-in user.
	"""

	swipee_id: str
	liked: bool
	enqueued_at_ms: int = field(default_factory=now_ms)
	swiper_id: Optional[str] = None

	def to_payload(self) -> dict[str, Any]:
		return {"swipee_id": self.swipee_id, "liked": self.liked}


@dataclass(slots=True, frozen=True)
class UndoEntry:
	"""Full snapshot of the last swiped card, kept for single-level undo."""

	swipee_id: str
	liked: bool
	card: Card
	index: int


@dataclass(frozen=True)
class SwipeUiState:
	fetching: bool = False
	exhausted: bool = False
	cards: tuple[Card, ...] = ()
	my_photo: Optional[str] = None
	error: Optional[str] = None

	def copy_with(self, **changes: Any) -> "SwipeUiState":
		if "cards" in changes:
			changes["cards"] = tuple(changes["cards"])
		return replace(self, **changes)
