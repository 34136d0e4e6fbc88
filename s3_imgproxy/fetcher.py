from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, NamedTuple

import httpx
from boto3.session import Session
from botocore.auth import S3SigV4Auth
from botocore.awsrequest import AWSRequest

from .errors import ListBucketDenied, OriginNotAllowed, TransportFailure, UpstreamTimeout
from .settings import BucketAddressing

if TYPE_CHECKING:
    from collections.abc import Iterable

    from botocore.credentials import Credentials

    from .dispatch import RequestDescriptor
    from .settings import ProxySettings
else:  # pragma: no cover
    Iterable = Any

LOG = logging.getLogger("s3_imgproxy.fetcher")

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Headers that are rewritten or dropped between signing and delivery; signing
# them makes the storage backend reject the signature.
UNSIGNABLE_HEADERS = HOP_BY_HOP_HEADERS | {
    "x-forwarded-proto",
    "x-real-ip",
    "accept-encoding",
    "host",
    "content-length",
}
EDGE_HEADER_PREFIX = "cf-"


class FetchResult(NamedTuple):
    request: httpx.Request
    response: httpx.Response


class RangeAttempt(Enum):
    SUCCESS = "success"
    RETRY = "retry"
    GIVE_UP = "give_up"
    PASS_THROUGH = "pass_through"


def classify_range_attempt(
    response: httpx.Response, attempt: int, max_attempts: int
) -> RangeAttempt:
    """Decide what to do with the response to a ranged request.

    A successful response without ``content-range`` carries the whole object
    instead of the requested range and is retried while attempts remain.
    """
    if "content-range" in response.headers:
        return RangeAttempt.SUCCESS
    if not response.is_success:
        return RangeAttempt.PASS_THROUGH
    if attempt < max_attempts:
        return RangeAttempt.RETRY
    return RangeAttempt.GIVE_UP


def filter_headers(
    headers: Iterable[tuple[str, str]], allowed: frozenset[str] | None = None
) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for key, value in headers:
        lowered = key.lower()
        if lowered in UNSIGNABLE_HEADERS or lowered.startswith(EDGE_HEADER_PREFIX):
            continue
        if allowed and lowered not in allowed:
            continue
        filtered[lowered] = value
    return filtered


def check_list_bucket(path: str, settings: ProxySettings) -> None:
    """Reject paths that would list a bucket unless listing is allowed.

    Raises:
        ListBucketDenied: the path has too few segments for the addressing mode.
    """
    if settings.allow_list_bucket:
        return
    trimmed = path[1:] if path.startswith("/") else path
    if trimmed.endswith("/"):
        trimmed = trimmed[:-1]
    if settings.addressing is BucketAddressing.PATH_STYLE:
        denied = len(trimmed.split("/")) < 2
    else:
        denied = trimmed == ""
    if denied:
        msg = f"bucket listing denied for path {path!r}"
        raise ListBucketDenied(msg)


def resolve_upstream(request: RequestDescriptor, settings: ProxySettings) -> httpx.URL:
    """Build the storage URL for ``request``: always https on port 443.

    The query string is dropped so that parameters which do not take part in
    the cache key cannot select different upstream content.
    """
    addressing = settings.addressing
    if addressing is BucketAddressing.PATH_STYLE:
        host = settings.endpoint
    elif addressing is BucketAddressing.HOST_STYLE:
        host = f"{request.host.split('.')[0]}.{settings.endpoint}"
    else:
        host = f"{settings.bucket_name}.{settings.endpoint}"
    return httpx.URL(f"https://{host}{request.path}")


async def send_upstream(client: httpx.AsyncClient, request: httpx.Request) -> httpx.Response:
    try:
        return await client.send(request, stream=True)
    except httpx.TimeoutException as error:
        msg = f"timed out fetching {request.url}"
        raise UpstreamTimeout(msg) from error
    except httpx.TransportError as error:
        msg = f"transport failure fetching {request.url}: {error}"
        raise TransportFailure(msg) from error


class StorageFetcher:
    """Fetch objects from an S3-compatible backend with signed requests."""

    def __init__(self, settings: ProxySettings, client: httpx.AsyncClient):
        self._settings = settings
        self._client = client
        self._credentials = self._resolve_credentials()

    def _resolve_credentials(self) -> Credentials | None:
        session = Session(
            aws_access_key_id=self._settings.access_key,
            aws_secret_access_key=self._settings.secret_key,
            aws_session_token=self._settings.session_token,
            region_name=self._settings.signing_region,
        )
        credentials = session.get_credentials()
        if credentials is None:
            LOG.warning("no storage credentials configured, requests are unsigned")
        return credentials

    def sign(self, url: httpx.URL, headers: dict[str, str]) -> httpx.Request:
        """Sign a GET for ``url``.

        HEAD requests are signed as GET as well: intermediaries may rewrite the
        method, which would invalidate a HEAD signature.
        """
        aws_request = AWSRequest(method="GET", url=str(url), headers=headers)
        if self._credentials is not None:
            S3SigV4Auth(
                self._credentials, "s3", self._settings.signing_region
            ).add_auth(aws_request)
        return self._client.build_request(
            "GET", url, headers=dict(aws_request.headers.items())
        )

    async def fetch(self, request: RequestDescriptor) -> FetchResult:
        check_list_bucket(request.path, self._settings)
        url = resolve_upstream(request, self._settings)
        headers = filter_headers(request.headers, self._settings.allowed_headers)
        signed = self.sign(url, headers)
        LOG.debug("fetch upstream url=%s method=%s", url, request.method)

        if "range" in signed.headers:
            return await self._fetch_range(signed)
        response = await send_upstream(self._client, signed)
        return FetchResult(signed, response)

    async def _fetch_range(self, request: httpx.Request) -> FetchResult:
        max_attempts = self._settings.range_attempts
        for attempt in range(1, max_attempts + 1):
            response = await send_upstream(self._client, request)
            outcome = classify_range_attempt(response, attempt, max_attempts)
            if outcome is RangeAttempt.RETRY:
                LOG.warning(
                    "range header in request for %s but no content-range in "
                    "response, will retry %d more times",
                    request.url,
                    max_attempts - attempt,
                )
                await response.aclose()
                continue
            if outcome is RangeAttempt.SUCCESS and attempt > 1:
                LOG.info(
                    "retry for %s succeeded on attempt %d, response has content-range",
                    request.url,
                    attempt,
                )
            elif outcome is RangeAttempt.GIVE_UP:
                LOG.warning(
                    "tried range request for %s %d times but no content-range "
                    "in response, returning full response",
                    request.url,
                    max_attempts,
                )
            return FetchResult(request, response)
        msg = "range retry loop ended without a response"
        raise RuntimeError(msg)


class UrlFetcher:
    """Fetch from an absolute URL embedded in the request path."""

    def __init__(self, settings: ProxySettings, client: httpx.AsyncClient):
        self._settings = settings
        self._client = client

    async def fetch(self, request: RequestDescriptor, url: str) -> FetchResult:
        try:
            target = httpx.URL(url)
        except httpx.InvalidURL as error:
            msg = f"invalid origin url {url!r}"
            raise OriginNotAllowed(msg) from error
        allowed = self._settings.url_origin_hosts or frozenset()
        if target.host.lower() not in allowed:
            msg = f"origin host {target.host!r} is not allowed"
            raise OriginNotAllowed(msg)

        headers = filter_headers(request.headers, self._settings.allowed_headers)
        upstream = self._client.build_request("GET", target, headers=headers)
        LOG.debug("fetch url origin=%s method=%s", target, request.method)
        response = await send_upstream(self._client, upstream)
        return FetchResult(upstream, response)
