import hmac

from fastapi import HTTPException, Request

from governor.app.core.config import Settings


def get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header.

    Args:
        request: The incoming request

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate admin token for administrative endpoints (reset, exhaustion).

    Raises:
        HTTPException: 503 if no admin token is configured,
            401 if the token is missing or invalid
    """
    app_settings: Settings = request.app.state.settings
    expected_token = app_settings.admin_token
    if not expected_token:
        raise HTTPException(status_code=503, detail="Admin endpoints are disabled (ADMIN_TOKEN not set)")

    # Always compare, even for a missing token, to avoid timing differences
    token = get_bearer_token(request) or ""
    if not hmac.compare_digest(token, expected_token):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
