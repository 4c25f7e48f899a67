"""Bucket-style blob store clients used for derivative storage."""

from __future__ import annotations

import hashlib
import hmac
import os
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Protocol
from urllib.parse import parse_qs, quote, unquote, urlencode, urlparse

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from photo_diary.config import Settings
from photo_diary.errors import ObjectStoreError
from photo_diary.hasher import CONTENT_HASH_ALGO
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "object_store"})


class ObjectStore(Protocol):
    """Thin contract over a bucket-based blob store.

    ``remove`` is idempotent: removing a path that does not exist is not an
    error. ``checksum`` is the blob's content hash, kept alongside it where the
    backend has room for object metadata. Every failure surfaces as
    :class:`ObjectStoreError`.
    """

    @property
    def is_public(self) -> bool: ...

    def put(
        self, path: str, data: bytes, content_type: str, cache_control: str | None = None, checksum: str | None = None
    ) -> None: ...

    def remove(self, paths: Sequence[str]) -> None: ...

    def sign_url(self, path: str, ttl_seconds: int) -> str: ...

    def public_url(self, path: str) -> str | None: ...

    def get(self, path: str) -> bytes: ...


def _validate_key(path: str) -> str:
    key = path.strip().lstrip("/")
    if not key or any(part in {"", ".", ".."} for part in key.split("/")):
        raise ObjectStoreError(f"invalid object path: {path!r}")
    return key


class LocalObjectStore:
    """Filesystem-backed bucket.

    Signed URLs carry an ``expires`` epoch and an HMAC-SHA256 ``signature``
    over ``path:expires``; :meth:`verify_signed_url` is the serving-side check.
    """

    def __init__(
        self,
        root: Path,
        *,
        base_url: str = "http://localhost:8000/media",
        secret: str = "change-me",
        public: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)
        self._base_url = base_url.rstrip("/")
        self._secret = secret.encode("utf-8")
        self._public = public
        self._clock = clock

    @property
    def is_public(self) -> bool:
        return self._public

    def _path_for(self, path: str) -> Path:
        return self._root / _validate_key(path)

    def put(
        self, path: str, data: bytes, content_type: str, cache_control: str | None = None, checksum: str | None = None
    ) -> None:
        target = self._path_for(path)
        tmp = target.with_name(target.name + ".part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, target)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise ObjectStoreError(f"put {path} failed: {exc}") from exc
        LOGGER.debug(
            "object_put",
            extra={"path": path, "bytes": len(data), "content_type": content_type, "checksum": checksum},
        )

    def remove(self, paths: Sequence[str]) -> None:
        for path in paths:
            target = self._path_for(path)
            try:
                target.unlink(missing_ok=True)
            except OSError as exc:
                raise ObjectStoreError(f"remove {path} failed: {exc}") from exc

    def _signature(self, key: str, expires: int) -> str:
        return hmac.new(self._secret, f"{key}:{expires}".encode("utf-8"), hashlib.sha256).hexdigest()

    def sign_url(self, path: str, ttl_seconds: int) -> str:
        key = _validate_key(path)
        if not self._path_for(key).exists():
            raise ObjectStoreError(f"cannot sign missing object {path}")
        expires = int(self._clock()) + int(ttl_seconds)
        query = urlencode({"expires": expires, "signature": self._signature(key, expires)})
        return f"{self._base_url}/{quote(key)}?{query}"

    def verify_signed_url(self, url: str) -> bool:
        parsed = urlparse(url)
        prefix = urlparse(self._base_url).path.rstrip("/") + "/"
        if not parsed.path.startswith(prefix):
            return False
        key = unquote(parsed.path[len(prefix):])
        params = parse_qs(parsed.query)
        try:
            expires = int(params["expires"][0])
            signature = params["signature"][0]
        except (KeyError, IndexError, ValueError):
            return False
        if expires <= self._clock():
            return False
        return hmac.compare_digest(signature, self._signature(key, expires))

    def public_url(self, path: str) -> str | None:
        if not self._public:
            return None
        return f"{self._base_url}/{quote(_validate_key(path))}"

    def get(self, path: str) -> bytes:
        try:
            return self._path_for(path).read_bytes()
        except OSError as exc:
            raise ObjectStoreError(f"get {path} failed: {exc}") from exc

    def exists(self, path: str) -> bool:
        return self._path_for(path).exists()


class S3ObjectStore:
    """S3-compatible bucket accessed through boto3."""

    def __init__(
        self,
        bucket: str,
        *,
        client=None,
        public: bool = False,
        public_base_url: str | None = None,
        region: str | None = None,
        endpoint_url: str | None = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
    ) -> None:
        self._bucket = bucket
        self._public = public
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._region = region
        if client is None:
            session = boto3.session.Session(region_name=region)
            client = session.client(
                "s3",
                endpoint_url=endpoint_url or None,
                config=Config(
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                    retries={"max_attempts": 2, "mode": "standard"},
                ),
            )
        self._client = client

    @property
    def is_public(self) -> bool:
        return self._public

    def put(
        self, path: str, data: bytes, content_type: str, cache_control: str | None = None, checksum: str | None = None
    ) -> None:
        params: dict[str, object] = {
            "Bucket": self._bucket,
            "Key": _validate_key(path),
            "Body": data,
            "ContentType": content_type,
        }
        if cache_control:
            params["CacheControl"] = f"max-age={cache_control}" if cache_control.isdigit() else cache_control
        if checksum:
            params["Metadata"] = {"content-hash": checksum, "content-hash-algo": CONTENT_HASH_ALGO}
        try:
            self._client.put_object(**params)
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"put {path} failed: {exc}") from exc

    def remove(self, paths: Sequence[str]) -> None:
        keys = [_validate_key(path) for path in paths]
        # delete_objects accepts at most 1000 keys per call.
        for start in range(0, len(keys), 1000):
            chunk = keys[start : start + 1000]
            try:
                response = self._client.delete_objects(
                    Bucket=self._bucket,
                    Delete={"Objects": [{"Key": key} for key in chunk], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as exc:
                raise ObjectStoreError(f"remove failed: {exc}") from exc
            errors = [err for err in response.get("Errors", []) if err.get("Code") != "NoSuchKey"]
            if errors:
                raise ObjectStoreError(f"remove failed for {[err.get('Key') for err in errors]}")

    def sign_url(self, path: str, ttl_seconds: int) -> str:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._bucket, "Key": _validate_key(path)},
                ExpiresIn=int(ttl_seconds),
            )
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"sign {path} failed: {exc}") from exc

    def public_url(self, path: str) -> str | None:
        if not self._public:
            return None
        key = quote(_validate_key(path))
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        region = self._region or "us-east-1"
        return f"https://{self._bucket}.s3.{region}.amazonaws.com/{key}"

    def get(self, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=_validate_key(path))
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"get {path} failed: {exc}") from exc


def build_object_store(settings: Settings) -> ObjectStore:
    """Construct the configured object store backend."""

    storage = settings.storage
    if storage.backend == "s3":
        return S3ObjectStore(
            storage.bucket,
            public=storage.public,
            public_base_url=storage.public_base_url,
            region=storage.region,
            endpoint_url=storage.endpoint_url,
            connect_timeout=storage.connect_timeout_seconds,
            read_timeout=storage.read_timeout_seconds,
        )
    if storage.backend == "local":
        return LocalObjectStore(
            Path(storage.root).expanduser().resolve(),
            base_url=storage.public_base_url or "http://localhost:8000/media",
            secret=storage.signing_secret,
            public=storage.public,
        )
    raise ValueError(f"Unsupported storage backend: {storage.backend!r}")


__all__ = ["ObjectStore", "LocalObjectStore", "S3ObjectStore", "build_object_store"]
