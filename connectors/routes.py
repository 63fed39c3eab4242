"""
Connector API routes — connect, OAuth authorize/callback, refresh, disconnect.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import html
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse

from auth.dependencies import get_hub, get_orchestrator
from connectors.errors import ConnectorError
from connectors.registry import ConnectorRegistry
from core.factory import OrchestratorHub
from core.orchestrator import ConnectionOrchestrator
from utils.schemas import ConnectRequest, Provider, SelectResourceRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])

_HTTP_STATUS: Dict[str, int] = {
    "UNAUTHORIZED": status.HTTP_401_UNAUTHORIZED,
    "BACKEND_AUTH": status.HTTP_401_UNAUTHORIZED,
    "RATE_LIMITED": status.HTTP_429_TOO_MANY_REQUESTS,
    "NETWORK": status.HTTP_502_BAD_GATEWAY,
    "SERVER_REJECTED": status.HTTP_502_BAD_GATEWAY,
    "TIMED_OUT": status.HTTP_408_REQUEST_TIMEOUT,
    "CSRF_MISMATCH": status.HTTP_400_BAD_REQUEST,
    "CANCELLED": status.HTTP_409_CONFLICT,
    "AUTHORIZATION_FAILED": status.HTTP_400_BAD_REQUEST,
    "NOT_CONFIGURED": status.HTTP_404_NOT_FOUND,
    "UNSUPPORTED": status.HTTP_400_BAD_REQUEST,
}


def _http_error(exc: ConnectorError) -> HTTPException:
    return HTTPException(
        status_code=_HTTP_STATUS.get(exc.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=exc.payload(),
    )


def _provider(provider: str) -> Provider:
    if ConnectorRegistry().get(provider) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Provider '{provider}' not found",
        )
    return Provider(provider)


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers() -> list[dict]:
    """
    List all available connector providers and whether OAuth is configured.
    No auth required — used by frontend to show available connectors.
    """
    return ConnectorRegistry().list_providers()


@router.get("/connections")
async def list_connections(
    orch: ConnectionOrchestrator = Depends(get_orchestrator),
) -> list[dict]:
    """Connection state of every provider for the current session."""
    return [conn.public_view() for conn in orch.store.all().values()]


@router.get("/{provider}")
async def get_connection(
    provider: str,
    orch: ConnectionOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return orch.store.get(_provider(provider)).public_view()


@router.post("/{provider}/connect")
async def connect_with_token(
    provider: str,
    body: ConnectRequest,
    orch: ConnectionOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Connect with a pasted personal access token."""
    key = _provider(provider)
    if not body.token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="A token is required; use /authorize for OAuth",
        )
    try:
        conn = await orch.connect(key, body.token)
    except ConnectorError as exc:
        raise _http_error(exc)
    return conn.public_view()


@router.post("/{provider}/authorize")
async def start_authorization(
    provider: str,
    orch: ConnectionOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Start the OAuth flow.

    Frontend should open ``authorize_url`` in a new tab; completion is
    detected in the background and shows up in ``GET /{provider}``.
    """
    key = _provider(provider)
    try:
        pending = await orch.begin_connect(key)
    except ConnectorError as exc:
        raise _http_error(exc)
    return {
        "provider": key.value,
        "authorize_url": pending.authorize_url,
        "expires_at": pending.expires_at.isoformat(),
    }


@router.post("/{provider}/cancel")
async def cancel_authorization(
    provider: str,
    orch: ConnectionOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    cancelled = await orch.cancel_connect(_provider(provider))
    return {"provider": provider, "cancelled": cancelled}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    access_token: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    hub: OrchestratorHub = Depends(get_hub),
) -> HTMLResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Hands the result to the waiting poller and returns a small HTML page
    that notifies the opener window and auto-closes.  Implicit-grant
    tokens arrive in the URL fragment, which the server never sees, so a
    bare request gets a page that moves the fragment into the query.
    """
    key = _provider(provider)
    if not (code or access_token or error):
        return HTMLResponse(content=_fragment_bounce_html(), status_code=200)

    await hub.callback.handle(
        key,
        {
            "code": code,
            "state": state,
            "access_token": access_token,
            "error": error,
            "error_description": error_description,
        },
    )
    display = ConnectorRegistry().require(key).display_name
    if error:
        return HTMLResponse(
            content=_callback_html(False, f"{display} denied access: {error_description or error}", key.value),
            status_code=200,
        )
    return HTMLResponse(
        content=_callback_html(True, f"{display} authorized. Finishing connection…", key.value),
        status_code=200,
    )


@router.delete("/{provider}")
async def disconnect(
    provider: str,
    orch: ConnectionOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Remove the token from the backend and clear the local connection."""
    try:
        conn = await orch.disconnect(_provider(provider))
    except ConnectorError as exc:
        raise _http_error(exc)
    return conn.public_view()


@router.post("/{provider}/refresh")
async def refresh(
    provider: str,
    orch: ConnectionOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    key = _provider(provider)
    try:
        connected = await orch.refresh_all(key)
    except ConnectorError as exc:
        raise _http_error(exc)
    return {"connected": connected, "connection": orch.store.get(key).public_view()}


@router.post("/{provider}/select")
async def select_resource(
    provider: str,
    body: SelectResourceRequest,
    orch: ConnectionOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Select a site / project and load its deployments."""
    try:
        conn = await orch.select_resource(_provider(provider), body.resource_id)
    except ConnectorError as exc:
        raise _http_error(exc)
    return conn.public_view()


# ── Callback HTML templates ────────────────────────────────────────────


def _callback_html(success: bool, message: str, provider: str) -> str:
    """
    Small HTML page shown in the OAuth tab after redirect.
    Sends a postMessage to the opener and auto-closes.
    """
    status_emoji = "✅" if success else "❌"
    status_text = "Authorized" if success else "Failed"
    color = "#00d992" if success else "#ef4444"
    message_js = json.dumps(
        {"type": "oauth-callback", "provider": provider, "success": success, "message": message}
    )

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>{provider} {status_text}</title>
    <style>
        body {{
            font-family: 'Inter', system-ui, sans-serif;
            background: #0b0d11; color: #e4e7ee;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        .card {{
            text-align: center; padding: 40px;
            background: #12151b; border: 1px solid #1f2330;
            border-radius: 12px; max-width: 400px;
        }}
        .emoji {{ font-size: 3rem; }}
        h2 {{ color: {color}; margin: 16px 0 8px; }}
        p {{ color: #a0a6b8; font-size: 0.85rem; }}
        .close-note {{ color: #636a80; font-size: 0.7rem; margin-top: 20px; }}
    </style>
</head>
<body>
    <div class="card">
        <div class="emoji">{status_emoji}</div>
        <h2>{status_text}</h2>
        <p>{html.escape(message)}</p>
        <p class="close-note">This window will close automatically…</p>
    </div>
    <script>
        // Notify the opener window
        if (window.opener) {{
            window.opener.postMessage({message_js}, '*');
        }}
        // Auto-close after 2 seconds
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""


def _fragment_bounce_html() -> str:
    """Re-request the callback with the URL fragment as the query string."""
    return """<!DOCTYPE html>
<html>
<head><title>Completing authorization…</title></head>
<body>
    <script>
        if (window.location.hash.length > 1) {
            window.location.replace(window.location.pathname + '?' + window.location.hash.substring(1));
        } else {
            document.body.textContent = 'Nothing to complete. You can close this window.';
        }
    </script>
</body>
</html>"""
