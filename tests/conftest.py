from __future__ import annotations

import io
import threading
import time
from collections.abc import Callable, Sequence
from zoneinfo import ZoneInfo

import pytest
from PIL import Image

from photo_diary.capture import CaptureNormalizer
from photo_diary.config import UploadConfig
from photo_diary.derivatives import DerivativeEncoder
from photo_diary.errors import ObjectStoreError
from photo_diary.metadata_store import SqlMetadataStore
from photo_diary.quota import QuotaGuard
from photo_diary.upload import UploadPipeline

UTC = ZoneInfo("UTC")
# 2023-11-14 22:13:20 UTC
START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeObjectStore:
    """In-memory bucket with failure and latency injection keyed by path substrings."""

    def __init__(self, *, public: bool = False) -> None:
        self.blobs: dict[str, bytes] = {}
        self.public = public
        self.fail_put: set[str] = set()
        self.put_delay: dict[str, float] = {}
        self.fail_sign: set[str] = set()
        self.fail_get = False
        self.fail_remove = False
        self.put_calls: list[str] = []
        self.remove_calls: list[list[str]] = []
        self.sign_calls: list[str] = []
        self.checksums: dict[str, str | None] = {}
        self._lock = threading.Lock()

    @property
    def is_public(self) -> bool:
        return self.public

    def put(
        self, path: str, data: bytes, content_type: str, cache_control: str | None = None, checksum: str | None = None
    ) -> None:
        with self._lock:
            self.put_calls.append(path)
        for marker, delay in self.put_delay.items():
            if marker in path:
                time.sleep(delay)
        if any(marker in path for marker in self.fail_put):
            raise ObjectStoreError(f"injected put failure for {path}")
        with self._lock:
            self.blobs[path] = data
            self.checksums[path] = checksum

    def remove(self, paths: Sequence[str]) -> None:
        with self._lock:
            self.remove_calls.append(list(paths))
        if self.fail_remove:
            raise ObjectStoreError("injected remove failure")
        with self._lock:
            for path in paths:
                self.blobs.pop(path, None)

    def sign_url(self, path: str, ttl_seconds: int) -> str:
        with self._lock:
            self.sign_calls.append(path)
            count = len(self.sign_calls)
        if any(marker in path for marker in self.fail_sign):
            raise ObjectStoreError(f"injected sign failure for {path}")
        return f"https://signed.test/{path}?ttl={ttl_seconds}&n={count}"

    def public_url(self, path: str) -> str | None:
        return f"https://cdn.test/{path}" if self.public else None

    def get(self, path: str) -> bytes:
        if self.fail_get:
            raise ObjectStoreError("injected get failure")
        try:
            return self.blobs[path]
        except KeyError as exc:
            raise ObjectStoreError(f"missing {path}") from exc


def make_jpeg(
    size: tuple[int, int] = (1600, 1200),
    color: tuple[int, int, int] = (200, 120, 90),
    exif_datetime: str | None = None,
) -> bytes:
    image = Image.new("RGB", size, color)
    buffer = io.BytesIO()
    if exif_datetime is not None:
        exif = Image.Exif()
        exif[306] = exif_datetime
        image.save(buffer, format="JPEG", exif=exif)
    else:
        image.save(buffer, format="JPEG")
    return buffer.getvalue()


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def metadata(tmp_path, clock) -> SqlMetadataStore:
    return SqlMetadataStore(tmp_path / "photos.db", clock=clock)


@pytest.fixture
def jpeg() -> Callable[..., bytes]:
    return make_jpeg


@pytest.fixture
def build_pipeline(metadata, store, clock):
    """Factory for an :class:`UploadPipeline` over the shared fakes."""

    created: list[UploadPipeline] = []

    def _build(daily_limit: int = 2, config: UploadConfig | None = None, **kwargs) -> UploadPipeline:
        quota = QuotaGuard(metadata, daily_limit=daily_limit, tz=UTC, clock=clock, entitlements=kwargs.pop("entitlements", None))
        pipeline = UploadPipeline(
            kwargs.pop("metadata", metadata),
            kwargs.pop("objects", store),
            quota,
            CaptureNormalizer(UTC, clock=clock),
            DerivativeEncoder(),
            config=config or UploadConfig(put_timeout_seconds=5.0, commit_timeout_seconds=5.0),
            **kwargs,
        )
        created.append(pipeline)
        return pipeline

    yield _build
    for pipeline in created:
        pipeline.close()
