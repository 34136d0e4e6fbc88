from __future__ import annotations

from typing import TYPE_CHECKING

from litestar import Litestar, Request, get
from litestar.config.cors import CORSConfig
from litestar.handlers import asgi
from litestar.logging.config import LoggingConfig
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController

from .dispatch import RequestDescriptor
from .proxy import ImageProxy

if TYPE_CHECKING:
    from litestar.types import Receive, Scope, Send


prometheus_config = PrometheusConfig(app_name="s3_imgproxy", prefix="s3_imgproxy")


def create_app(proxy: ImageProxy | None = None) -> Litestar:
    """Create the image proxy ASGI application."""
    if proxy is None:
        proxy = ImageProxy.from_env()

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @asgi(path="/", is_mount=True, copy_scope=True)
    async def proxy_handler(scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope=scope, receive=receive)
        response = await proxy.handle(RequestDescriptor.from_scope(scope))
        asgi_response = response.to_asgi_response(None, request)
        await asgi_response(scope, receive, send)

    async def startup(app: Litestar) -> None:
        await proxy.startup()

    async def shutdown(app: Litestar) -> None:
        await proxy.shutdown()

    cors_config = CORSConfig(
        allow_origins=["*"],
        allow_methods=["GET", "HEAD"],
        allow_headers=["*"],
        expose_headers=["ETag", "Content-Range", "Content-Length"],
    )

    logging_config = LoggingConfig(
        loggers={"s3_imgproxy": {"level": proxy.settings.log_level}},
        log_exceptions="always",
    )

    return Litestar(
        route_handlers=[health, proxy_handler, PrometheusController],
        on_startup=[startup],
        on_shutdown=[shutdown],
        cors_config=cors_config,
        logging_config=logging_config,
        middleware=[prometheus_config.middleware],
    )


app = create_app()
