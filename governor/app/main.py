from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from governor.app.api.ai import router as ai_router
from governor.app.api.quota import router as quota_router
from governor.app.core.config import Settings, settings as default_settings
from governor.app.core.http_client import init_http_client
from governor.app.core.logging import get_log_context, get_logger, setup_logging
from governor.app.exceptions import GovernorException, RateLimitError
from governor.app.middleware.quota import QuotaGovernorMiddleware
from governor.app.middleware.request_id import RequestIdMiddleware
from governor.app.quota.governor import Clock, QuotaGovernor
from governor.app.quota.registry import GovernorRegistry
from governor.app.services.ai_client import GeminiClient


def create_app(
    config: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The upstream governor and the per-client registry are created here and
    live exactly as long as the returned application.

    Args:
        config: Settings to use (defaults to the environment-loaded settings)
        clock: Monotonic time source shared by all governors
        http_client: HTTP client for the downstream AI API. When omitted, a
            pooled client is opened for the lifespan of the application.

    Returns:
        Configured FastAPI application instance
    """
    config = config or default_settings
    setup_logging()
    logger = get_logger(__name__)

    upstream_governor = QuotaGovernor(
        max_requests=config.governor_max_requests,
        window_seconds=config.governor_window_seconds,
        block_seconds=config.governor_block_seconds,
        clock=clock,
        name="upstream",
    )
    client_governors = GovernorRegistry(
        max_requests=config.client_max_requests,
        window_seconds=config.client_window_seconds,
        block_seconds=config.client_block_seconds,
        clock=clock,
        max_entries=config.client_max_entries,
    )
    ai_client = GeminiClient(upstream_governor, http_client=http_client, config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Open the shared HTTP client unless one was injected."""
        if http_client is not None:
            yield
        else:
            async with init_http_client(config) as client:
                ai_client.http_client = client
                logger.info(
                    "Application startup complete",
                    extra={
                        "governor_max_requests": config.governor_max_requests,
                        "governor_window_seconds": config.governor_window_seconds,
                        "ai_configured": ai_client.is_available(),
                    },
                )
                yield
            ai_client.http_client = None

        removed = client_governors.cleanup()
        logger.info(f"Application shutdown complete ({removed} idle client governors dropped)")

    app = FastAPI(
        title="Quota Governor",
        description="Rolling-window quota governor in front of a generative-AI API",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = config
    app.state.upstream_governor = upstream_governor
    app.state.client_governors = client_governors
    app.state.ai_client = ai_client

    # Middleware order matters: last added = first executed
    app.add_middleware(
        QuotaGovernorMiddleware,
        registry=client_governors,
        path_prefixes=config.governed_path_prefixes,
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
        max_age=600,
    )

    app.include_router(quota_router)
    app.include_router(ai_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with upstream governor and AI client status."""
        upstream = upstream_governor.get_status()
        return {
            "status": "degraded" if upstream.is_blocked else "ok",
            "components": {
                "upstream_governor": upstream.to_dict(),
                "client_governors": {"active": len(client_governors)},
                "ai_client": {
                    "configured": ai_client.is_available(),
                    "model": ai_client.model,
                },
            },
        }

    @app.exception_handler(GovernorException)
    async def governor_exception_handler(request: Request, exc: GovernorException) -> JSONResponse:
        """Map governor exceptions to their HTTP status and JSON body."""
        headers = {}
        if isinstance(exc, RateLimitError):
            headers["Retry-After"] = str(exc.retry_after)
        if exc.status_code >= 500:
            logger.error(
                f"{type(exc).__name__}: {exc.message}",
                extra=get_log_context(request_id=getattr(request.state, "request_id", None)),
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response(), headers=headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode adds the
        exception message and type.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
            }
        )

        if config.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                }
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,
            }
        )

    return app


# Create the application instance
app = create_app()
