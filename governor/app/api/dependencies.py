"""FastAPI dependencies resolving the governors attached to the application."""

from typing import Annotated

from fastapi import Depends, Request

from governor.app.core.config import Settings
from governor.app.quota.governor import QuotaGovernor
from governor.app.quota.registry import GovernorRegistry
from governor.app.services.ai_client import GeminiClient


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_upstream_governor(request: Request) -> QuotaGovernor:
    """Governor guarding the shared downstream AI quota."""
    return request.app.state.upstream_governor


def get_client_registry(request: Request) -> GovernorRegistry:
    """Registry of per-client governors."""
    return request.app.state.client_governors


def get_ai_client(request: Request) -> GeminiClient:
    return request.app.state.ai_client


SettingsDep = Annotated[Settings, Depends(get_settings)]
UpstreamGovernorDep = Annotated[QuotaGovernor, Depends(get_upstream_governor)]
ClientRegistryDep = Annotated[GovernorRegistry, Depends(get_client_registry)]
AIClientDep = Annotated[GeminiClient, Depends(get_ai_client)]
