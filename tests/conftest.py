from __future__ import annotations

from pathlib import Path

import pytest

from urlcache.cache_proxy.fetcher import OriginFetcher
from urlcache.cache_proxy.orchestrator import CacheOrchestrator
from urlcache.cache_proxy.store import LocalObjectStore
from urlcache.common.settings import ProxySettings

from tests.utils.origin import FakeOrigin


FALLBACK_URL = "http://fallback.test/"
API_TOKEN = "test-token"


@pytest.fixture
def settings(tmp_path: Path) -> ProxySettings:
    return ProxySettings(
        api_token=API_TOKEN,
        fallback_url=FALLBACK_URL,
        storage_path=tmp_path / "storage",
        otel_sampler_ratio=1.0,
    )


@pytest.fixture
def origin() -> FakeOrigin:
    fake = FakeOrigin()
    fake.add(FALLBACK_URL, status=200, body=b"fallback page")
    return fake


@pytest.fixture
def store(tmp_path: Path) -> LocalObjectStore:
    return LocalObjectStore(tmp_path / "objects")


@pytest.fixture
def make_orchestrator(origin: FakeOrigin, store: LocalObjectStore):
    def _make(**kwargs) -> CacheOrchestrator:
        kwargs.setdefault("store", store)
        client = origin.client(follow_redirects=kwargs.pop("follow_redirects", True))
        return CacheOrchestrator(OriginFetcher(client), fallback_url=FALLBACK_URL, **kwargs)

    return _make
