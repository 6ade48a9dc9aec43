import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from swipefeed.domain.swipe import cache as cache_module
from swipefeed.domain.swipe import outbox as outbox_module
from swipefeed.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
    from swipefeed.infra.redis import redis_client, set_redis_client
    original = redis_client.client
    client = FakeRedis(decode_responses=True)
    set_redis_client(client)
    try:
        yield client
    finally:
        set_redis_client(original)
        await client.flushall()


@pytest.fixture(autouse=True)
def fresh_swipe_cache():
    """Every test starts from an empty process-wide cache and memory outbox."""
    cache = cache_module.SwipeFeedCache()
    previous = cache_module.set_swipe_feed_cache(cache)
    store = outbox_module.MemoryOutboxStore()
    outbox_module.set_outbox_store(store)
    try:
        yield cache
    finally:
        cache_module.set_swipe_feed_cache(previous)
        outbox_module.set_outbox_store(None)


@pytest.fixture(autouse=True)
def force_test_settings():
    original_signed = settings.photo_signed_urls
    original_drop = settings.wipe_drop_pending
    settings.photo_signed_urls = False
    settings.wipe_drop_pending = False
    try:
        yield
    finally:
        settings.photo_signed_urls = original_signed
        settings.wipe_drop_pending = original_drop
