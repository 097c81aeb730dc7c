from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from urlcache.cache_proxy.errors import FetchError, StoreError
from urlcache.cache_proxy.fetcher import OriginFetcher
from urlcache.cache_proxy.keys import derive_key
from urlcache.cache_proxy.orchestrator import CacheOrchestrator
from urlcache.cache_proxy.store import LocalObjectStore

from tests.conftest import FALLBACK_URL
from tests.utils.origin import FakeOrigin, RecordingLogger


URL = "http://example.com/a"


class FailingStore(LocalObjectStore):
    async def write_key(self, key, body, metadata):
        raise StoreError("bucket unavailable")


class GatedStore(LocalObjectStore):
    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def write_key(self, key, body, metadata):
        self.started.set()
        await self.release.wait()
        return await super().write_key(key, body, metadata)


class GatedFailingStore(GatedStore):
    async def write_key(self, key, body, metadata):
        self.started.set()
        await self.release.wait()
        raise StoreError("bucket unavailable")


@pytest.mark.asyncio
async def test_cold_cache_healthy_origin_caches_and_returns(make_orchestrator, origin: FakeOrigin, store) -> None:
    origin.add(URL, body=b"hello", headers={"Content-Type": "text/plain", "X-Origin": "yes"})
    orchestrator = make_orchestrator()

    result = await orchestrator.cache_url(URL, {"User-Agent": "tester"})

    assert result.outcome == "origin"
    assert result.status_code == 200
    assert result.content == b"hello"
    assert result.headers["x-origin"] == "yes"
    stored = await store.get(URL)
    assert stored is not None
    assert stored.body == b"hello"
    assert stored.key == derive_key(URL)
    assert stored.metadata == {"url": URL}


@pytest.mark.asyncio
async def test_warm_cache_origin_down_serves_stored_copy(make_orchestrator, origin: FakeOrigin, store) -> None:
    await store.put_if_absent(URL, b"hello", {"url": URL})
    origin.add(URL, status=500, body=b"boom", headers={"X-Origin": "yes"})
    orchestrator = make_orchestrator()

    result = await orchestrator.cache_url(URL)

    assert result.outcome == "cache"
    assert result.status_code == 200
    assert result.content == b"hello"
    assert "x-origin" not in result.headers
    assert origin.hits(FALLBACK_URL) == 0


@pytest.mark.asyncio
async def test_cold_cache_origin_down_returns_fallback_verbatim(make_orchestrator, origin: FakeOrigin, store) -> None:
    origin.add(URL, status=404, body=b"gone")
    origin.add(FALLBACK_URL, status=503, body=b"fallback unavailable", headers={"Retry-After": "30"})
    logger = RecordingLogger()
    orchestrator = make_orchestrator(logger=logger)

    result = await orchestrator.cache_url(URL)

    assert result.outcome == "fallback"
    assert result.status_code == 503
    assert result.content == b"fallback unavailable"
    assert result.headers["retry-after"] == "30"
    assert await store.exists(URL) is False
    [(level, fields)] = logger.named("cache_miss_fallback")
    assert level == "warning"
    assert fields["status"] == 404
    assert fields["body"] == "gone"


@pytest.mark.asyncio
async def test_fallback_request_carries_no_user_agent_override(make_orchestrator, origin: FakeOrigin) -> None:
    origin.add(URL, status=500)
    orchestrator = make_orchestrator()

    await orchestrator.cache_url(URL, {"User-Agent": "tester"})

    origin_request, fallback_request = origin.requests
    assert origin_request.headers["user-agent"] == "tester"
    assert fallback_request.headers["user-agent"].startswith("python-httpx/")


@pytest.mark.asyncio
async def test_concurrent_first_fetch_stores_exactly_one_object(tmp_path: Path) -> None:
    origin = FakeOrigin(delay=0.01)
    origin.add(URL, body=b"hello")
    store = LocalObjectStore(tmp_path)
    orchestrator = CacheOrchestrator(OriginFetcher(origin.client()), store, FALLBACK_URL)

    first, second = await asyncio.gather(orchestrator.cache_url(URL), orchestrator.cache_url(URL))

    assert first.content == second.content == b"hello"
    assert first.status_code == second.status_code == 200
    assert origin.hits(URL) == 2
    objects = [p for p in tmp_path.rglob("*") if p.is_file() and not p.name.endswith(".meta.json")]
    assert len(objects) == 1
    assert objects[0].read_bytes() == b"hello"


@pytest.mark.asyncio
async def test_coalescing_shares_one_origin_fetch(tmp_path: Path) -> None:
    origin = FakeOrigin(delay=0.01)
    origin.add(URL, body=b"hello")
    orchestrator = CacheOrchestrator(
        OriginFetcher(origin.client()),
        LocalObjectStore(tmp_path),
        FALLBACK_URL,
        coalesce=True,
    )

    results = await asyncio.gather(*(orchestrator.cache_url(URL) for _ in range(3)))

    assert [r.content for r in results] == [b"hello"] * 3
    assert origin.hits(URL) == 1
    await orchestrator.cache_url(URL)
    assert origin.hits(URL) == 2


@pytest.mark.asyncio
async def test_redirect_treated_as_failure_by_default(make_orchestrator, origin: FakeOrigin, store) -> None:
    origin.add(URL, status=302, headers={"Location": "http://example.com/b"})
    orchestrator = make_orchestrator(follow_redirects=False)

    result = await orchestrator.cache_url(URL)

    assert result.outcome == "fallback"
    assert result.content == b"fallback page"
    assert await store.exists(URL) is False


@pytest.mark.asyncio
async def test_redirect_success_policy_caches(make_orchestrator, origin: FakeOrigin, store) -> None:
    origin.add(URL, status=301, body=b"moved", headers={"Location": "http://example.com/b"})
    orchestrator = make_orchestrator(follow_redirects=False, redirect_policy="success")

    result = await orchestrator.cache_url(URL)

    assert result.outcome == "origin"
    assert result.status_code == 301
    stored = await store.get(URL)
    assert stored is not None and stored.body == b"moved"


@pytest.mark.asyncio
async def test_redirect_passthrough_skips_store(make_orchestrator, origin: FakeOrigin, store) -> None:
    origin.add(URL, status=307, headers={"Location": "http://example.com/b"})
    orchestrator = make_orchestrator(follow_redirects=False, redirect_policy="passthrough")

    result = await orchestrator.cache_url(URL)

    assert result.outcome == "passthrough"
    assert result.status_code == 307
    assert result.headers["location"] == "http://example.com/b"
    assert await store.exists(URL) is False
    assert origin.hits(FALLBACK_URL) == 0


@pytest.mark.asyncio
async def test_followed_redirect_is_cached_under_requested_url(make_orchestrator, origin: FakeOrigin, store) -> None:
    origin.add(URL, status=302, headers={"Location": "http://example.com/b"})
    origin.add("http://example.com/b", body=b"final")
    orchestrator = make_orchestrator()

    result = await orchestrator.cache_url(URL)

    assert result.outcome == "origin"
    assert result.content == b"final"
    stored = await store.get(URL)
    assert stored is not None and stored.body == b"final"


@pytest.mark.asyncio
async def test_informational_status_is_fatal(make_orchestrator, origin: FakeOrigin) -> None:
    origin.add(URL, status=101)
    orchestrator = make_orchestrator()

    with pytest.raises(FetchError):
        await orchestrator.cache_url(URL)


@pytest.mark.asyncio
async def test_origin_transport_failure_is_fatal(make_orchestrator, origin: FakeOrigin, store) -> None:
    await store.put_if_absent(URL, b"hello")
    origin.fail(URL)
    orchestrator = make_orchestrator()

    with pytest.raises(FetchError):
        await orchestrator.cache_url(URL)


@pytest.mark.asyncio
async def test_fallback_transport_failure_is_fatal(make_orchestrator, origin: FakeOrigin) -> None:
    origin.add(URL, status=500)
    origin.fail(FALLBACK_URL)
    orchestrator = make_orchestrator()

    with pytest.raises(FetchError):
        await orchestrator.cache_url(URL)


@pytest.mark.asyncio
async def test_confirmed_write_failure_fails_request(make_orchestrator, origin: FakeOrigin, tmp_path: Path) -> None:
    origin.add(URL, body=b"hello")
    logger = RecordingLogger()
    orchestrator = make_orchestrator(store=FailingStore(tmp_path), logger=logger)

    with pytest.raises(StoreError):
        await orchestrator.cache_url(URL)

    # The caller reports the error; the orchestrator does not log it a second time.
    assert logger.named("cache_write_failed") == []


@pytest.mark.asyncio
async def test_write_failure_after_cancellation_is_logged(make_orchestrator, origin: FakeOrigin, tmp_path: Path) -> None:
    origin.add(URL, body=b"hello")
    logger = RecordingLogger()
    store = GatedFailingStore(tmp_path)
    orchestrator = make_orchestrator(store=store, logger=logger)

    task = asyncio.create_task(orchestrator.cache_url(URL))
    await store.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    store.release.set()
    await orchestrator.aclose()

    [(level, fields)] = logger.named("cache_write_failed")
    assert level == "error"
    assert fields["write_policy"] == "confirmed"


@pytest.mark.asyncio
async def test_background_write_failure_is_only_logged(make_orchestrator, origin: FakeOrigin, tmp_path: Path) -> None:
    origin.add(URL, body=b"hello")
    logger = RecordingLogger()
    orchestrator = make_orchestrator(store=FailingStore(tmp_path), write_policy="background", logger=logger)

    result = await orchestrator.cache_url(URL)
    await orchestrator.aclose()

    assert result.status_code == 200
    assert result.content == b"hello"
    assert orchestrator.pending_writes == 0
    [(level, fields)] = logger.named("cache_write_failed")
    assert level == "error"
    assert fields["error_type"] == "StoreError"


@pytest.mark.asyncio
async def test_cancelled_request_still_completes_store_write(make_orchestrator, origin: FakeOrigin, tmp_path: Path) -> None:
    origin.add(URL, body=b"hello")
    store = GatedStore(tmp_path)
    orchestrator = make_orchestrator(store=store)

    task = asyncio.create_task(orchestrator.cache_url(URL))
    await store.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    store.release.set()
    await orchestrator.aclose()

    stored = await store.get(URL)
    assert stored is not None
    assert stored.body == b"hello"


@pytest.mark.asyncio
async def test_second_write_for_same_url_is_skipped_and_logged(origin: FakeOrigin, tmp_path: Path) -> None:
    logger = RecordingLogger()
    store = LocalObjectStore(tmp_path, logger=logger)
    origin.add(URL, body=b"hello")
    orchestrator = CacheOrchestrator(OriginFetcher(origin.client()), store, FALLBACK_URL)
    await orchestrator.cache_url(URL)
    origin.add(URL, body=b"changed")
    await orchestrator.cache_url(URL)

    stored = await store.get(URL)
    assert stored is not None and stored.body == b"hello"
    [(level, fields)] = logger.named("object_exists_skipping_put")
    assert level == "info"
    assert fields["key"] == derive_key(URL)
