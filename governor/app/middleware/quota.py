"""Per-client quota middleware.

Applies a per-client ``QuotaGovernor`` to requests under the governed path
prefixes (the AI endpoints) so one user cannot drain the shared downstream
quota.
"""

import hashlib
import math
from typing import Sequence

from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from governor.app.core.logging import get_log_context, get_logger
from governor.app.exceptions import RateLimitError
from governor.app.quota.registry import GovernorRegistry

logger = get_logger(__name__)

MAX_API_KEY_LENGTH = 512


def get_client_key(request: Request) -> str:
    """Get the governor key for the request.

    Uses the bearer API key if available, otherwise the client IP address.
    Both are hashed with SHA-256 so raw keys are never stored.

    Raises:
        HTTPException: 400 if the API key is unreasonably long
    """
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        api_key = auth[7:].strip()
        if len(api_key) > MAX_API_KEY_LENGTH:
            raise HTTPException(status_code=400, detail="API key too long (max 512 characters)")
        key_hash = hashlib.sha256(api_key.encode()).hexdigest()[:32]
        return f"quota:apikey:{key_hash}"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else "unknown"

    ip_hash = hashlib.sha256(client_ip.encode()).hexdigest()[:32]
    return f"quota:ip:{ip_hash}"


def rate_limit_headers(limit: int, remaining: int, retry_after: float | None = None) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(remaining),
    }
    if retry_after is not None:
        headers["Retry-After"] = str(math.ceil(retry_after))
    return headers


class QuotaGovernorMiddleware(BaseHTTPMiddleware):
    """Middleware enforcing per-client admission on governed paths."""

    def __init__(
        self,
        app,
        registry: GovernorRegistry,
        path_prefixes: Sequence[str] = ("/ai",),
    ):
        super().__init__(app)
        self.registry = registry
        self.path_prefixes = tuple(path_prefixes)

    def _is_governed(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.path_prefixes)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        if not self._is_governed(request.url.path):
            return await call_next(request)

        try:
            key = get_client_key(request)
        except HTTPException as e:
            return JSONResponse(status_code=e.status_code, content={"detail": e.detail})

        result = self.registry.get(key).try_acquire()
        limit = self.registry.config.max_requests

        if not result.admitted:
            error = RateLimitError(result.retry_after_seconds)
            logger.info(
                "Client request refused by quota governor",
                extra=get_log_context(
                    request_id=getattr(request.state, "request_id", None),
                    client_key=key,
                    path=request.url.path,
                ),
            )
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_response(),
                headers=rate_limit_headers(limit, 0, result.retry_after_seconds),
            )

        response = await call_next(request)
        response.headers.update(rate_limit_headers(limit, result.remaining))
        return response
