"""Feed session keys derived from (user, preferences).

A key change invalidates the card buffer, the swipe ledger, the outbox and the
pagination cursor together, so the key must not change just because a
preference map was built in a different insertion order.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping, Optional


def canonical_preferences(value: Any) -> Any:
	"""Normalize a preference structure so equal preferences serialize identically."""
	if isinstance(value, Mapping):
		return {str(key): canonical_preferences(value[key]) for key in sorted(value, key=str)}
	if isinstance(value, (set, frozenset)):
		items = [canonical_preferences(item) for item in value]
		return sorted(items, key=lambda item: json.dumps(item, sort_keys=True, default=str))
	if isinstance(value, (list, tuple)):
		return [canonical_preferences(item) for item in value]
	return value


def preferences_fingerprint(prefs: Optional[Mapping[str, Any]]) -> str:
	payload = json.dumps(
		canonical_preferences(prefs or {}),
		sort_keys=True,
		separators=(",", ":"),
		default=str,
	)
	return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def session_key(user_id: str, prefs: Optional[Mapping[str, Any]]) -> str:
	return f"{user_id}:{preferences_fingerprint(prefs)}"
