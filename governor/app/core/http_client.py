"""Shared HTTP client for calls to the downstream AI API.

The client is created in the application lifespan and reused by the
AI client for connection pooling.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx

from governor.app.core.config import Settings, settings as default_settings


def create_http_client(config: Settings | None = None, **kwargs) -> httpx.AsyncClient:
    """Create a new HTTP client with pool limits and granular timeouts.

    The returned client should be closed when done:
        async with create_http_client() as client:
            ...

    Args:
        config: Settings to read timeouts and pool limits from
        **kwargs: Extra keyword arguments passed to httpx.AsyncClient
            (e.g. ``transport`` in tests)
    """
    config = config or default_settings
    timeout = httpx.Timeout(
        connect=config.httpx_connect_timeout,
        read=config.httpx_read_timeout,
        write=config.httpx_write_timeout,
        pool=config.httpx_pool_timeout,
    )
    limits = httpx.Limits(
        max_connections=config.httpx_max_connections,
        max_keepalive_connections=config.httpx_max_keepalive_connections,
        keepalive_expiry=config.httpx_keepalive_expiry,
    )
    return httpx.AsyncClient(timeout=timeout, limits=limits, **kwargs)


@asynccontextmanager
async def init_http_client(
    config: Settings | None = None,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Initialize and yield a pooled HTTP client, closing it on exit.

    Used in the FastAPI lifespan:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with init_http_client() as client:
                yield
    """
    client = create_http_client(config)
    try:
        yield client
    finally:
        await client.aclose()
