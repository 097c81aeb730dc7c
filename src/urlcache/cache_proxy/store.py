"""Write-once object store for cached origin bodies.

Two backends share the same contract: a local directory tree and any
S3-compatible bucket (R2, MinIO, AWS). Callers address objects by URL and the
store derives the sharded key itself.
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from tempfile import SpooledTemporaryFile
from typing import AsyncIterator, Callable, Optional, Union
from urllib.parse import quote, unquote
from uuid import uuid4

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import ProxySettings
from .errors import StoreError
from .keys import derive_key


Body = Union[bytes, None, AsyncIterator[bytes]]

METADATA_SUFFIX = ".meta.json"
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_CONFLICT_CODES = {"412", "PreconditionFailed", "409", "ConditionalRequestConflict"}


class _ObjectMissing(Exception):
    pass


class _ObjectExists(Exception):
    pass


STORE_WRITES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("urlcache_store_writes_total", "Objects written to the store")
)
STORE_SKIPPED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("urlcache_store_skipped_writes_total", "Writes skipped because the key already existed")
)
STORE_ERRORS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("urlcache_store_errors_total", "Object store failures", labelnames=("operation",))
)


@dataclass(frozen=True)
class StoredObject:
    key: str
    body: bytes
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.body)

    @property
    def url(self) -> Optional[str]:
        return self.metadata.get("url")


async def iter_body(body: Body) -> AsyncIterator[bytes]:
    """Normalise an empty, buffered or streaming body into an async chunk iterator."""
    if body is None:
        return
    if isinstance(body, (bytes, bytearray, memoryview)):
        if body:
            yield bytes(body)
        return
    async for chunk in body:
        if chunk:
            yield chunk


def sanitize_key(storage_dir: Path, cache_key: str) -> Path:
    root = storage_dir.resolve()
    candidate = root.joinpath(*cache_key.split("/"))
    resolved = candidate.resolve(strict=False)
    if resolved == root or not resolved.is_relative_to(root):
        raise StoreError(f"invalid object key: {cache_key!r}")
    return resolved


class ObjectStore:
    """URL-addressed, write-if-absent store.

    Subclasses implement the key-level primitives ``exists_key``,
    ``write_key`` and ``read_key``; this class supplies the URL-level
    contract on top of them.
    """

    backend_name = "abstract"

    def __init__(self, logger=None) -> None:
        self._logger = logger or structlog.get_logger("urlcache.cache_proxy.store")

    async def exists(self, url: str) -> bool:
        return await self.exists_key(derive_key(url))

    async def put_if_absent(self, url: str, body: Body, metadata: Optional[dict[str, str]] = None) -> bool:
        """Write ``body`` under the URL's key unless an object is already there.

        Returns ``True`` when a write happened. An existing object is never
        overwritten; a second write for the same key is logged and skipped.
        """
        key = derive_key(url)
        if await self.exists_key(key):
            STORE_SKIPPED_COUNTER.inc()
            self._logger.info("object_exists_skipping_put", url=url, key=key)
            return False
        written = await self.write_key(key, body, metadata if metadata is not None else {"url": url})
        if not written:
            STORE_SKIPPED_COUNTER.inc()
            self._logger.info("object_exists_skipping_put", url=url, key=key, raced=True)
            return False
        STORE_WRITES_COUNTER.inc()
        return True

    async def get(self, url: str) -> Optional[StoredObject]:
        return await self.read_key(derive_key(url))

    async def exists_key(self, key: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def write_key(self, key: str, body: Body, metadata: dict[str, str]) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def read_key(self, key: str) -> Optional[StoredObject]:  # pragma: no cover - interface
        raise NotImplementedError

    def status(self) -> dict[str, object]:  # pragma: no cover - interface
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    """Objects as files under a root directory, metadata in a JSON sidecar."""

    backend_name = "local"

    def __init__(self, storage_path: Path, logger=None) -> None:
        super().__init__(logger)
        self._root = Path(storage_path).expanduser()

    async def exists_key(self, key: str) -> bool:
        path = sanitize_key(self._root, key)
        try:
            return await asyncio.to_thread(path.is_file)
        except OSError as exc:
            STORE_ERRORS_COUNTER.inc(operation="head")
            raise StoreError(f"failed to probe {key}") from exc

    async def write_key(self, key: str, body: Body, metadata: dict[str, str]) -> bool:
        path = sanitize_key(self._root, key)
        tmp_body = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        tmp_meta = path.with_name(f".{path.name}.{uuid4().hex}.meta.tmp")
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(tmp_body.write_bytes, b"")
            async for chunk in iter_body(body):
                await asyncio.to_thread(_append, tmp_body, chunk)
            await asyncio.to_thread(tmp_meta.write_text, json.dumps(metadata), "utf-8")
            # Metadata is published first so a visible body always has its sidecar.
            await asyncio.to_thread(os.replace, tmp_meta, path.with_name(path.name + METADATA_SUFFIX))
            try:
                # link() refuses to replace an existing file, which keeps the first writer's body.
                await asyncio.to_thread(os.link, tmp_body, path)
            except FileExistsError:
                return False
        except OSError as exc:
            STORE_ERRORS_COUNTER.inc(operation="put")
            raise StoreError(f"failed to write {key}") from exc
        finally:
            tmp_body.unlink(missing_ok=True)
            tmp_meta.unlink(missing_ok=True)
        return True

    async def read_key(self, key: str) -> Optional[StoredObject]:
        path = sanitize_key(self._root, key)
        meta_path = path.with_name(path.name + METADATA_SUFFIX)
        try:
            if not await asyncio.to_thread(path.is_file):
                return None
            data = await asyncio.to_thread(path.read_bytes)
            metadata: dict[str, str] = {}
            if await asyncio.to_thread(meta_path.is_file):
                metadata = json.loads(await asyncio.to_thread(meta_path.read_text, "utf-8"))
        except (OSError, ValueError) as exc:
            STORE_ERRORS_COUNTER.inc(operation="get")
            raise StoreError(f"failed to read {key}") from exc
        return StoredObject(key=key, body=data, metadata=metadata)

    def status(self) -> dict[str, object]:
        self._root.mkdir(parents=True, exist_ok=True)
        return {
            "backend": self.backend_name,
            "storage_path": str(self._root),
            "writable": os.access(self._root, os.W_OK),
        }


def _append(path: Path, chunk: bytes) -> None:
    with path.open("ab") as handle:
        handle.write(chunk)


class S3ObjectStore(ObjectStore):
    """Objects in an S3-compatible bucket with the URL as user metadata."""

    backend_name = "s3"

    def __init__(self, settings: ProxySettings, logger=None) -> None:
        super().__init__(logger)
        self._settings = settings
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._spool_bytes = max(0, settings.s3_spool_bytes)

    async def exists_key(self, key: str) -> bool:
        try:
            await self._call("head", self._client.head_object, Bucket=self._bucket, Key=key)
        except _ObjectMissing:
            return False
        return True

    async def write_key(self, key: str, body: Body, metadata: dict[str, str]) -> bool:
        encoded = {name: quote(value, safe="/:?&=#+,;@") for name, value in metadata.items()}
        try:
            if body is None or isinstance(body, (bytes, bytearray, memoryview)):
                await self._put(key, bytes(body or b""), encoded)
                return True
            with SpooledTemporaryFile(max_size=self._spool_bytes) as spool:
                async for chunk in iter_body(body):
                    spool.write(chunk)
                spool.seek(0)
                await self._put(key, spool, encoded)
        except _ObjectExists:
            return False
        return True

    async def _put(self, key: str, payload, metadata: dict[str, str]) -> None:
        # If-None-Match makes the bucket reject the put when another writer got there first.
        await self._call(
            "put",
            self._client.put_object,
            Bucket=self._bucket,
            Key=key,
            Body=payload,
            Metadata=metadata,
            IfNoneMatch="*",
        )

    async def read_key(self, key: str) -> Optional[StoredObject]:
        try:
            response = await self._call("get", self._client.get_object, Bucket=self._bucket, Key=key)
        except _ObjectMissing:
            return None
        try:
            data = await asyncio.to_thread(response["Body"].read)
        except (BotoCoreError, OSError) as exc:
            STORE_ERRORS_COUNTER.inc(operation="get")
            raise StoreError(f"failed to read {key}") from exc
        metadata = {name: unquote(value) for name, value in (response.get("Metadata") or {}).items()}
        return StoredObject(key=key, body=data, metadata=metadata)

    def status(self) -> dict[str, object]:
        return {
            "backend": self.backend_name,
            "bucket": self._bucket,
            "endpoint": self._settings.s3_endpoint_url,
        }

    async def _call(self, operation: str, func: Callable[..., object], **kwargs) -> dict:
        try:
            return await asyncio.to_thread(func, **kwargs)
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "")
            if operation in {"head", "get"} and error_code in _MISSING_CODES:
                raise _ObjectMissing() from exc
            if operation == "put" and error_code in _CONFLICT_CODES:
                raise _ObjectExists() from exc
            STORE_ERRORS_COUNTER.inc(operation=operation)
            raise StoreError(f"S3 {operation} failed for {kwargs.get('Key')}: {error_code}") from exc
        except BotoCoreError as exc:
            STORE_ERRORS_COUNTER.inc(operation=operation)
            raise StoreError(f"S3 {operation} failed for {kwargs.get('Key')}") from exc


def build_store(settings: ProxySettings, logger=None) -> ObjectStore:
    if settings.s3_bucket:
        return S3ObjectStore(settings, logger=logger)
    return LocalObjectStore(settings.storage_path, logger=logger)
