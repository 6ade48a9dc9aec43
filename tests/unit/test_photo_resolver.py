import time

import pytest

from swipefeed.domain.swipe.photos import (
    PhotoResolver,
    is_signed_and_expired,
    parse_storage_ref,
    parse_storage_url,
    stable_key,
)

BASE = "https://proj.test"


class _Signer:
    def __init__(self, expires_in: int = 3600) -> None:
        self.calls: list[tuple[str, str, int]] = []
        self.expires_in = expires_in
        self.fail = False

    async def __call__(self, bucket: str, path: str, ttl: int) -> str:
        self.calls.append((bucket, path, ttl))
        if self.fail:
            raise ConnectionError("storage down")
        exp = int(time.time()) + self.expires_in
        return f"{BASE}/storage/v1/object/sign/{bucket}/{path}?token=t{len(self.calls)}&expires={exp}"


def test_parse_storage_helpers():
    assert parse_storage_url(f"{BASE}/storage/v1/object/public/pics/u1/a%20b.jpg") == ("pics", "u1/a b.jpg")
    assert parse_storage_url(f"{BASE}/other/path.jpg") is None
    assert parse_storage_ref("storage://pics/u1/a.jpg", "default") == ("pics", "u1/a.jpg")
    assert parse_storage_ref("storage://a.jpg", "default") == ("default", "a.jpg")
    assert parse_storage_ref("a.jpg", "default") is None


def test_signed_expiry_detection():
    now = 1_000
    assert is_signed_and_expired(f"{BASE}/x?token=t&expires=999", now=now)
    assert not is_signed_and_expired(f"{BASE}/x?token=t&expires=2000", now=now)
    assert not is_signed_and_expired(f"{BASE}/x?token=t", now=now)
    assert is_signed_and_expired(f"{BASE}/x", now=now)


def test_stable_key_prefers_bucket_path():
    assert stable_key(f"{BASE}/storage/v1/object/sign/pics/a.jpg?token=1") == "pics/a.jpg"
    assert stable_key("https://cdn.test/a.jpg?w=100") == "https://cdn.test/a.jpg"


@pytest.mark.asyncio
async def test_signed_resolution_is_memoized():
    signer = _Signer()
    resolver = PhotoResolver(signer, use_signed_urls=True, public_base_url=BASE, default_bucket="pics")

    first = await resolver.resolve_photo("u1/a.jpg")
    second = await resolver.resolve_photo("u1/a.jpg")

    assert first == second
    assert first.cache_key == "pics/u1/a.jpg"
    assert signer.calls == [("pics", "u1/a.jpg", resolver.sign_ttl_seconds)]
    assert len(resolver) == 1


@pytest.mark.asyncio
async def test_expired_memo_is_resigned():
    signer = _Signer(expires_in=-10)
    resolver = PhotoResolver(signer, use_signed_urls=True, public_base_url=BASE, default_bucket="pics")

    await resolver.resolve_photo("storage://pics/a.jpg")
    await resolver.resolve_photo("storage://pics/a.jpg")

    assert len(signer.calls) == 2


@pytest.mark.asyncio
async def test_external_urls_pass_through():
    signer = _Signer()
    resolver = PhotoResolver(signer, use_signed_urls=True, public_base_url=BASE)
    resolved = await resolver.resolve_photo("https://cdn.test/a.jpg?w=1")
    assert resolved.url == "https://cdn.test/a.jpg?w=1"
    assert signer.calls == []


@pytest.mark.asyncio
async def test_public_mode_builds_public_urls():
    resolver = PhotoResolver(use_signed_urls=False, public_base_url=BASE + "/", default_bucket="pics")
    resolved = await resolver.resolve_many(["/u1/a.jpg", "storage://other/b.jpg"])
    assert [r.url for r in resolved] == [
        f"{BASE}/storage/v1/object/public/pics/u1/a.jpg",
        f"{BASE}/storage/v1/object/public/other/b.jpg",
    ]


@pytest.mark.asyncio
async def test_signing_failure_falls_back_without_memoizing():
    signer = _Signer()
    signer.fail = True
    resolver = PhotoResolver(signer, use_signed_urls=True, public_base_url=BASE, default_bucket="pics")

    resolved = await resolver.resolve_photo("u1/a.jpg")
    assert resolved.url == "u1/a.jpg"
    assert len(resolver) == 0

    signer.fail = False
    resolved = await resolver.resolve_photo("u1/a.jpg")
    assert "token=" in resolved.url


@pytest.mark.asyncio
async def test_resolve_maybe_and_clear():
    resolver = PhotoResolver(use_signed_urls=False, public_base_url=BASE)
    assert await resolver.resolve_maybe(None) is None
    assert await resolver.resolve_maybe("a.jpg") is not None
    resolver.clear()
    assert len(resolver) == 0
