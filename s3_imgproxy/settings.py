from __future__ import annotations

import re
from enum import Enum
from typing import Literal

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PATH_BUCKET = "$path"
HOST_BUCKET = "$host"

_REGION_RE = re.compile(r"^s3\.([a-z0-9-]+)\.")


class BucketAddressing(str, Enum):
    """How the bucket name is folded into the upstream request."""

    PATH_STYLE = "path"
    HOST_STYLE = "host"
    NAMED_BUCKET = "named"


class ProxySettings(BaseSettings):
    """Configuration for the image proxy and its storage backend."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    bucket_name: str = Field(
        default=PATH_BUCKET,
        validation_alias=AliasChoices("S3_IMGPROXY_BUCKET_NAME", "BUCKET_NAME"),
    )
    endpoint: str = Field(
        default="s3.us-west-004.backblazeb2.com",
        validation_alias=AliasChoices("S3_IMGPROXY_ENDPOINT", "B2_ENDPOINT"),
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_IMGPROXY_ACCESS_KEY_ID",
            "B2_APPLICATION_KEY_ID",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_IMGPROXY_SECRET_ACCESS_KEY",
            "B2_APPLICATION_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias="S3_IMGPROXY_SESSION_TOKEN",
    )
    region: str | None = Field(
        default=None,
        validation_alias=AliasChoices("S3_IMGPROXY_REGION", "AWS_REGION"),
    )
    allow_list_bucket: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "S3_IMGPROXY_ALLOW_LIST_BUCKET", "ALLOW_LIST_BUCKET"
        ),
    )
    allowed_headers: frozenset[str] | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_IMGPROXY_ALLOWED_HEADERS", "ALLOWED_HEADERS"
        ),
    )
    range_attempts: int = Field(
        default=3,
        ge=1,
        validation_alias="S3_IMGPROXY_RANGE_ATTEMPTS",
    )
    url_origin_hosts: frozenset[str] | None = Field(
        default=None,
        validation_alias="S3_IMGPROXY_URL_ORIGIN_HOSTS",
    )
    cache_enabled: bool = Field(
        default=True,
        validation_alias="S3_IMGPROXY_CACHE_ENABLED",
    )
    cache_max_entries: int = Field(
        default=512,
        ge=1,
        validation_alias="S3_IMGPROXY_CACHE_MAX_ENTRIES",
    )
    cache_ttl: float = Field(
        default=2592000.0,
        gt=0,
        validation_alias="S3_IMGPROXY_CACHE_TTL",
    )
    cache_max_object_size: int = Field(
        default=10 * 1024 * 1024,
        validation_alias="S3_IMGPROXY_CACHE_MAX_OBJECT_SIZE",
    )
    resample: Literal["nearest", "bilinear", "bicubic", "lanczos"] = Field(
        default="nearest",
        validation_alias="S3_IMGPROXY_RESAMPLE",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        validation_alias="S3_IMGPROXY_LOG_LEVEL",
    )

    @field_validator("allowed_headers", "url_origin_hosts", mode="before")
    @classmethod
    def _parse_name_list(cls, value: object) -> frozenset[str] | None:
        if value is None:
            return None
        if isinstance(value, str):
            names = {part.strip().lower() for part in value.split(",")}
            return frozenset(name for name in names if name)
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(str(name).strip().lower() for name in value)
        msg = "Invalid name list format"
        raise ValueError(msg)

    @field_validator("endpoint", mode="after")
    @classmethod
    def _strip_endpoint(cls, value: str) -> str:
        # Accept endpoints given as URLs; only the hostname is used.
        host = value.strip()
        if "://" in host:
            host = host.split("://", 1)[1]
        return host.strip("/")

    @model_validator(mode="after")
    def _check_credentials(self) -> ProxySettings:
        if bool(self.access_key) != bool(self.secret_key):
            msg = "access_key and secret_key must be configured together"
            raise ValueError(msg)
        return self

    @property
    def addressing(self) -> BucketAddressing:
        if self.bucket_name == PATH_BUCKET:
            return BucketAddressing.PATH_STYLE
        if self.bucket_name == HOST_BUCKET:
            return BucketAddressing.HOST_STYLE
        return BucketAddressing.NAMED_BUCKET

    @property
    def signing_region(self) -> str:
        """Region used in the request signature scope."""
        if self.region:
            return self.region
        match = _REGION_RE.match(self.endpoint)
        if match:
            return match.group(1)
        return "us-east-1"


def load_settings_from_env() -> ProxySettings:
    """Load proxy settings from environment variables.

    Returns:
        ProxySettings instance populated from environment variables.
    """
    return ProxySettings()
