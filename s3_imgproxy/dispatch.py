"""Request classification and cache-key construction.

A request is classified once into an origin (where the bytes come from) and a
content kind (what happens to the bytes afterwards). Both are closed unions;
the proxy dispatches over them with ``isinstance`` in one place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, quote, unquote, urlsplit, urlunsplit

from .errors import UnprocessableImage
from .mime import get_mime
from .transform import parse_dimension, transform_image

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from litestar.types import Scope
else:  # pragma: no cover
    Callable = Mapping = Scope = Any

LOG = logging.getLogger("s3_imgproxy.dispatch")

# Left unescaped in cache-key values, everything else is percent-encoded.
_URI_COMPONENT_SAFE = "-_.!~*'()"

TRANSFORM_PARAM_FILTERS: dict[str, Callable[[str], int | None]] = {
    "w": parse_dimension,
    "h": parse_dimension,
}


@dataclass(frozen=True)
class RequestDescriptor:
    """Immutable view of the inbound request."""

    method: str
    url: str
    headers: tuple[tuple[str, str], ...] = ()

    def header(self, name: str) -> str | None:
        lowered = name.lower()
        for key, value in self.headers:
            if key == lowered:
                return value
        return None

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def query(self) -> str:
        return urlsplit(self.url).query

    @property
    def host(self) -> str:
        return urlsplit(self.url).hostname or ""

    @classmethod
    def from_scope(cls, scope: Scope) -> RequestDescriptor:
        headers = tuple(
            (key.decode("latin-1").lower(), value.decode("latin-1"))
            for key, value in scope.get("headers", [])
        )
        host = next((value for key, value in headers if key == "host"), None)
        if host is None:
            server = scope.get("server")
            host = f"{server[0]}:{server[1]}" if server else "localhost"
        # Mounted handlers see a rewritten "path"; raw_path is the request line.
        raw_path = scope.get("raw_path")
        if raw_path:
            path = raw_path.decode("latin-1").split("?", 1)[0]
        else:
            path = quote(scope.get("path", "/"), safe="/%:@!$&'()*+,;=~")
        if not path.startswith("/"):
            path = f"/{path}"
        url = f"{scope.get('scheme', 'http')}://{host}{path}"
        query_string = scope.get("query_string", b"")
        if query_string:
            url = f"{url}?{query_string.decode('latin-1')}"
        return cls(method=scope.get("method", "GET").upper(), url=url, headers=headers)


@dataclass(frozen=True)
class ObjectStorageOrigin:
    def cache_params(self) -> dict[str, str]:
        return {}


@dataclass(frozen=True)
class GenericUrlOrigin:
    url: str

    def cache_params(self) -> dict[str, str]:
        return {}


@dataclass(frozen=True)
class ImageContent:
    mime: str
    params: Mapping[str, int] = field(default_factory=dict)

    def cache_params(self) -> dict[str, str]:
        return {name: str(value) for name, value in self.params.items()}

    def handle(self, body: bytes, resample: str = "nearest") -> bytes:
        """Apply the requested transform, serving the original on failure."""
        try:
            return transform_image(
                body, self.params.get("w"), self.params.get("h"), resample
            )
        except UnprocessableImage as error:
            LOG.warning("serving untransformed %s image: %s", self.mime, error)
            return body


@dataclass(frozen=True)
class OpaqueContent:
    mime: str | None = None

    def cache_params(self) -> dict[str, str]:
        return {}

    def handle(self, body: bytes, resample: str = "nearest") -> bytes:
        return body


Origin = ObjectStorageOrigin | GenericUrlOrigin
ContentKind = ImageContent | OpaqueContent


@dataclass(frozen=True)
class Dispatch:
    origin: Origin
    content: ContentKind
    cache_key: str


def parse_transform_params(query: str) -> dict[str, int]:
    """Extract recognized transform parameters from a query string.

    Unknown names are ignored. For repeated names the last parseable value wins.
    """
    params: dict[str, int] = {}
    for name, value in parse_qsl(query, keep_blank_values=True):
        parser = TRANSFORM_PARAM_FILTERS.get(name)
        if parser is None:
            continue
        parsed = parser(value)
        if parsed is not None:
            params[name] = parsed
    return params


def select_origin(decoded_path: str) -> tuple[Origin, str]:
    """Pick the origin for an already-decoded path.

    Returns the origin together with the path used for content classification.
    """
    candidate = decoded_path.lstrip("/")
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return ObjectStorageOrigin(), decoded_path
    if parts.scheme in {"http", "https"} and parts.hostname:
        return GenericUrlOrigin(candidate), parts.path
    return ObjectStorageOrigin(), decoded_path


def select_content(path: str, query: str) -> ContentKind:
    mime = get_mime(path)
    if mime is not None and mime.startswith("image/"):
        return ImageContent(mime, parse_transform_params(query))
    return OpaqueContent(mime)


def build_cache_key(url: str, origin: Origin, content: ContentKind) -> str:
    """Canonical cache key: the request URL with a normalized query."""
    params = {**origin.cache_params(), **content.cache_params()}
    query = "&".join(
        f"{key}={quote(params[key], safe=_URI_COMPONENT_SAFE)}"
        for key in sorted(params)
    )
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc.lower(), parts.path, query, ""))


def dispatch(request: RequestDescriptor) -> Dispatch:
    decoded_path = unquote(request.path)
    origin, content_path = select_origin(decoded_path)
    content = select_content(content_path, request.query)
    cache_key = build_cache_key(request.url, origin, content)
    LOG.debug(
        "dispatch path=%s origin=%s content=%s key=%s",
        decoded_path,
        type(origin).__name__,
        type(content).__name__,
        cache_key,
    )
    return Dispatch(origin=origin, content=content, cache_key=cache_key)
