"""Central registry for Prometheus metrics used across the swipe engine."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


RETRY_ATTEMPTS = Counter(
	"swipefeed_retry_attempts_total",
	"Remote call attempts made through the retry executor",
	["operation", "result"],
)

RETRY_EXHAUSTED = Counter(
	"swipefeed_retry_exhausted_total",
	"Remote calls that failed after every allowed attempt",
	["operation"],
)

FEED_PAGES = Counter(
	"swipefeed_feed_pages_total",
	"Feed pages fetched from the remote feed",
	["kind"],
)

FEED_PAGE_ITEMS = Histogram(
	"swipefeed_feed_page_items",
	"Items returned per feed page",
	buckets=(0, 1, 5, 10, 20, 50, 100),
)

TOP_UPS = Counter(
	"swipefeed_topups_total",
	"Top-up requests by outcome",
	["result"],
)

SWIPES = Counter(
	"swipefeed_swipes_total",
	"Swipe decisions by delivery outcome",
	["liked", "result"],
)

OUTBOX_FLUSHES = Counter(
	"swipefeed_outbox_flushes_total",
	"Outbox batch flushes",
	["result"],
)

OUTBOX_PENDING = Gauge(
	"swipefeed_outbox_pending",
	"Swipe decisions waiting for remote confirmation",
)

OUTBOX_STORE_ERRORS = Counter(
	"swipefeed_outbox_store_errors_total",
	"Durable outbox store failures",
	["op"],
)

UNDOS = Counter(
	"swipefeed_undo_total",
	"Undo operations by remote outcome",
	["remote"],
)

SESSION_RESETS = Counter(
	"swipefeed_session_resets_total",
	"Cache invalidations caused by a session key change",
)

CACHE_COMPACTED = Counter(
	"swipefeed_cache_compacted_cards_total",
	"Swiped cards stripped of heavy fields",
)

CACHE_PRUNED = Counter(
	"swipefeed_cache_pruned_total",
	"Ledger or outbox entries evicted by pruning",
	["kind"],
)

CACHE_WIPE_HOOKS = Counter(
	"swipefeed_cache_wipe_hooks_total",
	"Cache wipe hook executions",
	["result"],
)

PHOTO_RESOLUTIONS = Counter(
	"swipefeed_photo_resolutions_total",
	"Photo reference resolutions",
	["result"],
)


def inc_retry_attempt(operation: str, result: str) -> None:
	RETRY_ATTEMPTS.labels(operation=operation, result=result).inc()


def inc_retry_exhausted(operation: str) -> None:
	RETRY_EXHAUSTED.labels(operation=operation).inc()


def observe_feed_page(kind: str, items: int) -> None:
	FEED_PAGES.labels(kind=kind).inc()
	FEED_PAGE_ITEMS.observe(items)


def inc_top_up(result: str) -> None:
	TOP_UPS.labels(result=result).inc()


def inc_swipe(liked: bool, result: str) -> None:
	SWIPES.labels(liked="true" if liked else "false", result=result).inc()


def inc_outbox_flush(result: str) -> None:
	OUTBOX_FLUSHES.labels(result=result).inc()


def set_outbox_pending(count: int) -> None:
	OUTBOX_PENDING.set(count)


def inc_outbox_store_error(op: str) -> None:
	OUTBOX_STORE_ERRORS.labels(op=op).inc()


def inc_undo(remote: str) -> None:
	UNDOS.labels(remote=remote).inc()


def inc_session_reset() -> None:
	SESSION_RESETS.inc()


def inc_compacted(count: int) -> None:
	if count > 0:
		CACHE_COMPACTED.inc(count)


def inc_pruned(kind: str, count: int) -> None:
	if count > 0:
		CACHE_PRUNED.labels(kind=kind).inc(count)


def inc_cache_wipe_hook(result: str) -> None:
	CACHE_WIPE_HOOKS.labels(result=result).inc()


def inc_photo_resolution(result: str) -> None:
	PHOTO_RESOLUTIONS.labels(result=result).inc()
