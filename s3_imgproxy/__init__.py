"""Edge image proxy for S3-compatible object storage."""

from .app import create_app
from .proxy import ImageProxy
from .settings import BucketAddressing, ProxySettings

__all__ = ["BucketAddressing", "ImageProxy", "ProxySettings", "create_app"]
