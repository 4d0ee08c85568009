import json
import math
import re
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate comma/space separated values.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]

    return [p for p in re.split(r"[,\s]+", raw) if p]


def _parse_cors_origins(raw: Any) -> list[str]:
    origins = _parse_list(raw)
    if "*" in origins:
        return ["*"]

    result: list[str] = []
    for origin in origins:
        if "://" not in origin:
            # Browsers include the scheme in the Origin header.
            candidates = [f"http://{origin}", f"https://{origin}"]
        else:
            candidates = [origin]
        for candidate in candidates:
            if candidate not in result:
                result.append(candidate)
    return result


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Upstream governor: paces all calls to the shared generative-AI quota
    governor_max_requests: int = 10
    governor_window_seconds: float = 60.0
    governor_block_seconds: float = 1800.0  # block after downstream reports exhaustion
    governor_warning_ratio: float = 0.8  # "approaching the limit" threshold

    # Per-client governors (one per API key / IP)
    client_max_requests: int = 10
    client_window_seconds: float = 60.0
    client_block_seconds: float = 1800.0
    client_max_entries: int = 10000
    governed_path_prefixes: Annotated[list[str], NoDecode] = ["/ai"]

    # Gemini settings
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_model: str = "gemini-2.0-flash"
    gemini_temperature: float = 0.3

    # HTTP client settings
    httpx_connect_timeout: float = 10.0
    httpx_read_timeout: float = 60.0
    httpx_write_timeout: float = 10.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 100
    httpx_max_keepalive_connections: int = 20

    # Administrative endpoints (reset, exhaustion signals)
    admin_token: str = ""

    # CORS settings
    cors_origins: Annotated[list[str], NoDecode] = ["*"]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def decode_cors_origins(cls, v: Any) -> list[str]:
        return _parse_cors_origins(v)

    @field_validator("governed_path_prefixes", mode="before")
    @classmethod
    def decode_path_prefixes(cls, v: Any) -> list[str]:
        return ["/" + p.lstrip("/") for p in _parse_list(v)]

    @field_validator("admin_token", mode="before")
    @classmethod
    def strip_admin_token(cls, v: Any) -> str:
        # Normalize accidental whitespace/newline from env/secret stores.
        return str(v or "").strip()

    @field_validator(
        "governor_max_requests",
        "client_max_requests",
        "client_max_entries",
    )
    @classmethod
    def validate_limit_positive(cls, v: int) -> int:
        """Validate request limits are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "governor_window_seconds",
        "governor_block_seconds",
        "client_window_seconds",
        "client_block_seconds",
        "httpx_connect_timeout",
        "httpx_read_timeout",
    )
    @classmethod
    def validate_duration_positive(cls, v: float) -> float:
        """Validate durations are finite and positive."""
        if not math.isfinite(v) or v <= 0:
            raise ValueError("Durations must be finite and positive")
        return v

    @field_validator("governor_warning_ratio")
    @classmethod
    def validate_warning_ratio(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("governor_warning_ratio must be in (0, 1]")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
