from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, assert_never

import httpx
from anyio import to_thread
from litestar.background_tasks import BackgroundTask
from litestar.response import Response

from .cache import CachedResponse, MemoryCacheStore, NullCacheStore
from .dispatch import GenericUrlOrigin, ObjectStorageOrigin, dispatch
from .errors import MethodNotAllowed, ProxyError, TransportFailure
from .fetcher import HOP_BY_HOP_HEADERS, StorageFetcher, UrlFetcher
from .settings import load_settings_from_env

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from .cache import CacheStore
    from .dispatch import Origin, RequestDescriptor
    from .fetcher import FetchResult
    from .settings import ProxySettings
else:  # pragma: no cover
    Callable = Iterable = Any

LOG = logging.getLogger("s3_imgproxy.proxy")

CACHE_CONTROL = "public, max-age=2592000"
DEFAULT_MEDIA_TYPE = "application/octet-stream"
# The body is re-read (and possibly re-encoded), so these no longer apply.
_ENTITY_HEADERS = frozenset({"content-length", "content-encoding"})
# Validators of the stored object that do not describe re-encoded bytes.
_TRANSFORMED_DROP_HEADERS = frozenset({"etag", "accept-ranges"})


async def _run_sync(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    return await to_thread.run_sync(func, *args, **kwargs)


class ImageProxy:
    def __init__(
        self,
        settings: ProxySettings,
        store: CacheStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._store = store if store is not None else self._build_store()
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._storage_fetcher: StorageFetcher | None = None
        self._url_fetcher: UrlFetcher | None = None

    @property
    def settings(self) -> ProxySettings:
        return self._settings

    @property
    def store(self) -> CacheStore:
        return self._store

    async def startup(self) -> None:
        self._http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, read=120.0),
            trust_env=False,
            transport=self._transport,
        )
        self._storage_fetcher = StorageFetcher(self._settings, self._http_client)
        self._url_fetcher = UrlFetcher(self._settings, self._http_client)
        LOG.info(
            "image proxy ready (endpoint=%s, addressing=%s, cache=%s)",
            self._settings.endpoint,
            self._settings.addressing.value,
            "enabled" if self._settings.cache_enabled else "disabled",
        )

    async def shutdown(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
            self._storage_fetcher = None
            self._url_fetcher = None

    async def handle(self, request: RequestDescriptor) -> Response:
        LOG.debug("handle method=%s url=%s", request.method, request.url)
        try:
            if request.method not in {"GET", "HEAD"}:
                msg = f"method {request.method} not allowed"
                raise MethodNotAllowed(msg)
            return await self._handle_read(request)
        except ProxyError as error:
            return self._from_proxy_error(error, request)

    def _build_store(self) -> CacheStore:
        if not self._settings.cache_enabled:
            return NullCacheStore()
        return MemoryCacheStore(
            max_entries=self._settings.cache_max_entries,
            ttl=self._settings.cache_ttl,
            max_object_size=self._settings.cache_max_object_size,
        )

    async def _handle_read(self, request: RequestDescriptor) -> Response:
        routed = dispatch(request)
        is_head = request.method == "HEAD"
        # The cache key ignores headers, so ranged requests never touch the cache.
        cacheable = request.header("range") is None

        if cacheable:
            cached = await self._store.match(routed.cache_key)
            if cached is not None:
                LOG.debug("cache hit key=%s", routed.cache_key)
                return self._build_response(
                    cached.status_code,
                    dict(cached.headers),
                    b"" if is_head else cached.body,
                )

        result = await self._fetch(request, routed.origin)
        upstream = result.response
        try:
            if upstream.status_code == 304 or is_head:
                headers = self._prepare_response_headers(upstream.headers.multi_items())
                return self._build_response(upstream.status_code, headers, b"")
            body = await upstream.aread()
        finally:
            await upstream.aclose()

        headers = self._prepare_response_headers(
            upstream.headers.multi_items(), drop=_ENTITY_HEADERS
        )
        if upstream.status_code != 200:
            LOG.debug(
                "passing through upstream status=%s url=%s",
                upstream.status_code,
                result.request.url,
            )
            return self._build_response(upstream.status_code, headers, body)

        content = routed.content
        payload = await _run_sync(content.handle, body, self._settings.resample)
        if payload is not body:
            for name in _TRANSFORMED_DROP_HEADERS:
                headers.pop(name, None)
        if content.mime is not None:
            headers["content-type"] = content.mime
        headers["cache-control"] = CACHE_CONTROL

        background = None
        if cacheable:
            entry = CachedResponse(status_code=200, headers=dict(headers), body=payload)
            background = BackgroundTask(self._store.put, routed.cache_key, entry)
        return self._build_response(200, headers, payload, background=background)

    async def _fetch(self, request: RequestDescriptor, origin: Origin) -> FetchResult:
        if self._storage_fetcher is None or self._url_fetcher is None:
            message = "proxy not initialised"
            raise RuntimeError(message)
        if isinstance(origin, ObjectStorageOrigin):
            return await self._storage_fetcher.fetch(request)
        if isinstance(origin, GenericUrlOrigin):
            return await self._url_fetcher.fetch(request, origin.url)
        assert_never(origin)

    def _prepare_response_headers(
        self,
        headers: Iterable[tuple[str, str]],
        drop: frozenset[str] = frozenset(),
    ) -> dict[str, str]:
        prepared: dict[str, str] = {}
        for key, value in headers:
            lowered = key.lower()
            if lowered in HOP_BY_HOP_HEADERS or lowered in drop:
                continue
            prepared[lowered] = value
        return prepared

    @staticmethod
    def _build_response(
        status_code: int,
        headers: dict[str, str],
        body: bytes,
        background: BackgroundTask | None = None,
    ) -> Response:
        media_type = headers.pop("content-type", DEFAULT_MEDIA_TYPE)
        return Response(
            content=body,
            status_code=status_code,
            headers=headers,
            media_type=media_type,
            background=background,
        )

    def _from_proxy_error(self, error: ProxyError, request: RequestDescriptor) -> Response:
        if isinstance(error, TransportFailure):
            LOG.warning("upstream failure for %s: %s", request.url, error.message)
        else:
            LOG.debug(
                "rejecting %s %s status=%s: %s",
                request.method,
                request.url,
                error.status_code,
                error.message,
            )
        return Response(content=b"", status_code=error.status_code)

    @classmethod
    def from_env(cls) -> ImageProxy:
        """Create an ImageProxy instance from environment variables.

        Returns:
            ImageProxy configured from environment variables.
        """
        return cls(settings=load_settings_from_env())
