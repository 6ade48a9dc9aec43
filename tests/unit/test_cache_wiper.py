import httpx
import pytest

from swipefeed.domain.swipe.container import build_swipe_controller
from swipefeed.domain.swipe.hooks import init_swipe_cache_wiper_hook
from swipefeed.domain.swipe.models import PendingSwipe
from swipefeed.domain.swipe.outbox import MemoryOutboxStore
from swipefeed.maintenance.cache_wiper import CacheWiper
from swipefeed.settings import settings

from swipe_fakes import make_card


@pytest.mark.asyncio
async def test_wiper_runs_every_hook_and_counts_failures():
    wiper = CacheWiper()
    calls = []

    def sync_hook():
        calls.append("sync")

    async def async_hook():
        calls.append("async")

    async def broken_hook():
        raise RuntimeError("boom")

    wiper.register_hook(broken_hook)
    wiper.register_hook(sync_hook)
    wiper.register_hook(sync_hook)
    wiper.register_hook(async_hook)

    assert await wiper.wipe_all() == 1
    assert calls == ["sync", "async"]

    wiper.unregister_hook(broken_hook)
    assert await wiper.wipe_all() == 0


@pytest.mark.asyncio
async def test_swipe_hook_keeps_pending_and_overrides(fresh_swipe_cache):
    wiper = CacheWiper()
    store = MemoryOutboxStore()
    await store.put("me", PendingSwipe("a", True, 1))
    fresh_swipe_cache.reset_if_key_changed("me:abc")
    fresh_swipe_cache.add_all([make_card("b")])
    fresh_swipe_cache.enqueue_pending("a", True, enqueued_at_ms=1)
    fresh_swipe_cache.add_unswipe_override("z")
    fresh_swipe_cache.last_top_card_id = "b"

    hook = init_swipe_cache_wiper_hook(wiper, cache=fresh_swipe_cache, outbox_store=store)
    assert init_swipe_cache_wiper_hook(wiper, cache=fresh_swipe_cache, outbox_store=store) is hook
    assert len(wiper.hooks) == 1

    assert await wiper.wipe_all() == 0

    assert fresh_swipe_cache.current_key is None
    assert fresh_swipe_cache.cards == []
    assert fresh_swipe_cache.pending_count == 1
    assert "z" in fresh_swipe_cache.unswipe_overrides
    assert fresh_swipe_cache.last_top_card_id == "b"
    assert [p.swipee_id for p in await store.load("me")] == ["a"]


@pytest.mark.asyncio
async def test_swipe_hook_drops_pending_when_configured(fresh_swipe_cache, monkeypatch):
    monkeypatch.setattr(settings, "wipe_drop_pending", True)
    wiper = CacheWiper()
    store = MemoryOutboxStore()
    await store.put("me", PendingSwipe("a", True, 1))
    fresh_swipe_cache.enqueue_pending("a", True)
    init_swipe_cache_wiper_hook(wiper, cache=fresh_swipe_cache, outbox_store=store)

    await wiper.wipe_all()

    assert fresh_swipe_cache.pending_count == 0
    assert await store.load("me") == []


@pytest.mark.asyncio
async def test_swipe_hook_flushes_first_and_survives_flush_errors(fresh_swipe_cache):
    wiper = CacheWiper()
    flushed = []

    async def flush():
        flushed.append(fresh_swipe_cache.pending_count)
        raise ConnectionError("offline")

    fresh_swipe_cache.enqueue_pending("a", True)
    init_swipe_cache_wiper_hook(wiper, cache=fresh_swipe_cache, outbox_store=MemoryOutboxStore(), flush=flush)

    assert await wiper.wipe_all() == 0
    assert flushed == [1]
    assert fresh_swipe_cache.pending_count == 1


@pytest.mark.asyncio
async def test_container_wires_controller_to_shared_cache(fresh_swipe_cache, monkeypatch):
    monkeypatch.setattr("swipefeed.obs.init", lambda: None)
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(204)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.test")
    wiper = CacheWiper()
    controller = build_swipe_controller(lambda: "me", http=http, wiper=wiper, start=False)
    try:
        assert controller.cache is fresh_swipe_cache
        assert len(wiper.hooks) == 1
        fresh_swipe_cache.enqueue_pending("a", True, swiper_id="me")
        await wiper.wipe_all()
        # The hook flushed through the controller before wiping
        assert fresh_swipe_cache.pending_count == 0
    finally:
        await controller.dispose()
    # The injected client belongs to the caller
    assert not http.is_closed
    await http.aclose()


@pytest.mark.asyncio
async def test_wipe_flushes_through_latest_controller(fresh_swipe_cache, monkeypatch):
    monkeypatch.setattr("swipefeed.obs.init", lambda: None)
    batches = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/handle_swipe_batch"):
            batches.append(request.url.path)
        return httpx.Response(204)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.test")
    wiper = CacheWiper()
    first = build_swipe_controller(lambda: "me", http=http, wiper=wiper, start=False)
    await first.dispose()
    second = build_swipe_controller(lambda: "me", http=http, wiper=wiper, start=False)
    try:
        assert len(wiper.hooks) == 1
        fresh_swipe_cache.enqueue_pending("a", True, swiper_id="me")
        await wiper.wipe_all()
        assert batches == ["/rest/v1/rpc/handle_swipe_batch"]
        assert fresh_swipe_cache.pending_count == 0
    finally:
        await second.dispose()
        await http.aclose()


@pytest.mark.asyncio
async def test_container_resolves_photos_through_injected_signer(fresh_swipe_cache, monkeypatch):
    monkeypatch.setattr("swipefeed.obs.init", lambda: None)
    monkeypatch.setattr(settings, "photo_signed_urls", True)
    signed = []

    async def signer(bucket: str, path: str, ttl: int) -> str:
        signed.append((bucket, path))
        return f"https://cdn.test/storage/v1/object/sign/{bucket}/{path}?token=t"

    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(204)))
    controller = build_swipe_controller(lambda: "me", http=http, signer=signer, wiper=CacheWiper(), start=False)
    try:
        resolved = await controller.photos.resolve_photo("storage://pics/a.jpg")
        assert resolved.url == "https://cdn.test/storage/v1/object/sign/pics/a.jpg?token=t"
        assert signed == [("pics", "a.jpg")]
    finally:
        await controller.dispose()
        await http.aclose()
