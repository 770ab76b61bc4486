############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# main.py: FastAPI application entry point and configuration
#
############################################################

"""FastAPI application entry point."""

import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from warpengine.app.api import api_router
from warpengine.app.core.runpod import RunpodClient
from warpengine.app.core.warps.engine import WarpLifecycleEngine
from warpengine.app.core.warps.sweeper import init_sweeper, shutdown_sweeper
from warpengine.app.db.session import dispose_engine, get_session_factory
from warpengine.app.logging_config import (
    bind_request_context,
    clear_request_context,
    get_logger,
    setup_logging,
)
from warpengine.app.services import EmailNotifier, PaymentService
from warpengine.app.settings import get_settings

setup_logging()
logger = get_logger(__name__)

# Probe and scrape endpoints are not access-logged
_QUIET_PATHS = frozenset({"/alivecheck", "/health", "/metrics"})


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Build the engine, sweeper and payment service; tear them down on exit."""
    settings = get_settings()
    logger.info(
        "warpengine_starting",
        version=settings.app_version,
        environment=settings.environment,
        endpoint_id=settings.runpod_endpoint_id,
    )

    session_factory = get_session_factory()
    runpod = RunpodClient(settings)
    engine = WarpLifecycleEngine(settings, runpod, session_factory)

    app.state.warp_engine = engine
    app.state.payment_service = PaymentService(
        settings, session_factory, EmailNotifier(settings)
    )
    await init_sweeper(settings, engine, session_factory)
    logger.info("warpengine_started", sweep_enabled=settings.sweep_enabled)

    try:
        yield
    finally:
        logger.info("warpengine_stopping")
        await shutdown_sweeper()
        await runpod.close()
        await dispose_engine()
        logger.info("warpengine_stopped")


class RequestContextMiddleware:
    """Raw ASGI middleware: request ID, log context and access logging.

    Runs the handler in the caller's task, so a client disconnect cannot
    cancel an in-flight transaction halfway through.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = headers.get(b"x-request-id", b"").decode() or str(uuid.uuid4())
        path = scope.get("path", "")
        bind_request_context(request_id=request_id, method=scope.get("method"), path=path)

        status_code = 500
        started = time.monotonic()

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                response_headers = list(message.get("headers", []))
                response_headers.append((b"x-request-id", request_id.encode()))
                message = {**message, "headers": response_headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            if path not in _QUIET_PATHS:
                logger.info(
                    "request_completed",
                    status=status_code,
                    duration_ms=round((time.monotonic() - started) * 1000, 1),
                )
            clear_request_context()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Serverless GPU session broker with prepaid time billing",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(RequestContextMiddleware)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_exception", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "code": "server_error"},
        )

    app.include_router(api_router)
    return app


app = create_app()


def main():
    """Run the application using uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "warpengine.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
