"""Error kinds raised inside the proxy pipeline.

Each carries the HTTP status that :class:`s3_imgproxy.proxy.ImageProxy`
answers with.
"""

from __future__ import annotations


class ProxyError(Exception):
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MethodNotAllowed(ProxyError):
    status_code = 405


class ListBucketDenied(ProxyError):
    """Request path would list a bucket and listing is disabled."""

    status_code = 404


class OriginNotAllowed(ProxyError):
    """Generic URL origin whose host is not on the allow-list."""

    status_code = 403


class TransportFailure(ProxyError):
    """Network, DNS or TLS failure while talking to the upstream."""

    status_code = 502


class UpstreamTimeout(TransportFailure):
    status_code = 504


class UnprocessableImage(ProxyError):
    """The fetched bytes could not be decoded or re-encoded as an image."""

    status_code = 422
