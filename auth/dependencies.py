"""
FastAPI dependencies for authentication.

Provides ``get_session_token`` (the application session bearer token) and
``get_orchestrator`` (the session's ConnectionOrchestrator), used across
all protected routes.
"""

from __future__ import annotations

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.factory import OrchestratorHub
from core.orchestrator import ConnectionOrchestrator

_bearer_scheme = HTTPBearer()


async def get_session_token(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Return the bearer token forwarded to the application backend."""
    return credentials.credentials


def get_hub(request: Request) -> OrchestratorHub:
    return request.app.state.connector_hub


async def get_orchestrator(
    session_token: str = Depends(get_session_token),
    hub: OrchestratorHub = Depends(get_hub),
) -> ConnectionOrchestrator:
    return hub.get(session_token)
