from __future__ import annotations

from io import BytesIO
from typing import TYPE_CHECKING

import httpx
import pytest
from PIL import Image
from s3_imgproxy import ImageProxy, ProxySettings
from s3_imgproxy.cache import MemoryCacheStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable

ENV_VARS = (
    "S3_IMGPROXY_BUCKET_NAME",
    "BUCKET_NAME",
    "S3_IMGPROXY_ENDPOINT",
    "B2_ENDPOINT",
    "S3_IMGPROXY_ACCESS_KEY_ID",
    "B2_APPLICATION_KEY_ID",
    "AWS_ACCESS_KEY_ID",
    "S3_IMGPROXY_SECRET_ACCESS_KEY",
    "B2_APPLICATION_KEY",
    "AWS_SECRET_ACCESS_KEY",
    "S3_IMGPROXY_SESSION_TOKEN",
    "AWS_SESSION_TOKEN",
    "S3_IMGPROXY_REGION",
    "AWS_REGION",
    "S3_IMGPROXY_ALLOW_LIST_BUCKET",
    "ALLOW_LIST_BUCKET",
    "S3_IMGPROXY_ALLOWED_HEADERS",
    "ALLOWED_HEADERS",
    "S3_IMGPROXY_RANGE_ATTEMPTS",
    "S3_IMGPROXY_URL_ORIGIN_HOSTS",
    "S3_IMGPROXY_CACHE_ENABLED",
    "S3_IMGPROXY_CACHE_MAX_ENTRIES",
    "S3_IMGPROXY_CACHE_TTL",
    "S3_IMGPROXY_CACHE_MAX_OBJECT_SIZE",
    "S3_IMGPROXY_RESAMPLE",
    "S3_IMGPROXY_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep settings deterministic regardless of the developer environment."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> ProxySettings:
    return ProxySettings(
        bucket_name="$path",
        endpoint="s3.us-west-004.backblazeb2.com",
        access_key="AKIDEXAMPLE",
        secret_key="wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY",
    )


def make_image(width: int, height: int, image_format: str = "PNG") -> bytes:
    image = Image.new("RGB", (width, height), (200, 40, 40))
    # A second color block makes crops and resizes observable.
    image.paste((40, 40, 200), (0, 0, max(1, width // 2), height))
    output = BytesIO()
    image.save(output, format=image_format)
    return output.getvalue()


# Pillow decodes XPM but has no encoder for it.
XPM_IMAGE = b"""/* XPM */
static char *icon[] = {
"4 2 2 1",
"  c #000000",
". c #FFFFFF",
" .. ",
".  ."
};
"""


@pytest.fixture
def xpm_image() -> bytes:
    return XPM_IMAGE


@pytest.fixture
def image_factory() -> Callable[..., bytes]:
    return make_image


class RecordingUpstream:
    """MockTransport handler that records requests and replays queued replies."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._queue: list[tuple[int, dict[str, str], bytes]] = []
        self._fallback: tuple[int, dict[str, str], bytes] = (404, {}, b"")

    def enqueue(
        self,
        status_code: int = 200,
        headers: dict[str, str] | None = None,
        content: bytes = b"",
    ) -> None:
        self._queue.append((status_code, headers or {}, content))

    def always(
        self,
        status_code: int = 200,
        headers: dict[str, str] | None = None,
        content: bytes = b"",
    ) -> None:
        self._fallback = (status_code, headers or {}, content)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._queue:
            status_code, headers, content = self._queue.pop(0)
        else:
            status_code, headers, content = self._fallback
        return httpx.Response(status_code, headers=headers, content=content)


@pytest.fixture
def upstream() -> RecordingUpstream:
    return RecordingUpstream()


@pytest.fixture
def store(settings: ProxySettings) -> MemoryCacheStore:
    return MemoryCacheStore(max_entries=settings.cache_max_entries)


@pytest.fixture
async def proxy(
    settings: ProxySettings,
    upstream: RecordingUpstream,
    store: MemoryCacheStore,
) -> AsyncGenerator[ImageProxy]:
    """Create and initialize a proxy talking to the recording upstream."""
    proxy = ImageProxy(settings, store=store, transport=httpx.MockTransport(upstream))
    await proxy.startup()
    yield proxy
    await proxy.shutdown()
