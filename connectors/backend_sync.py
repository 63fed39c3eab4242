"""
BackendSyncClient — persists a provider token on the application backend.

The backend exposes three routes per provider::

    GET    {base}/{prefix}-get
    POST   {base}/{prefix}-post      body: {"access_token", "refresh_token"}
    DELETE {base}/{prefix}-delete

All calls carry the application session token as a bearer credential.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from config.settings import config
from connectors.base import BaseConnector
from connectors.errors import BackendAuthError, NetworkError, ServerRejectedError
from utils.schemas import BackendRecord

logger = logging.getLogger(__name__)


class BackendSyncClient:
    def __init__(
        self,
        connector: BaseConnector,
        *,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.connector = connector
        self.base_url = (base_url or config.app_api_base_url).rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=config.http_timeout)
        self._owns_http = http_client is None

    @property
    def provider_name(self) -> str:
        return self.connector.provider_name

    def _url(self, action: str) -> str:
        return f"{self.base_url}/{self.connector.backend_endpoint_prefix}-{action}"

    async def _send(
        self,
        method: str,
        action: str,
        auth_token: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            return await self._http.request(
                method,
                self._url(action),
                headers={"Authorization": f"Bearer {auth_token}"},
                json=body,
            )
        except httpx.TransportError as exc:
            raise NetworkError(
                f"Backend {method} {action} failed: {exc}", provider=self.provider_name
            ) from exc

    def _raise_for_status(self, resp: httpx.Response, action: str) -> None:
        if resp.is_success:
            return
        logger.warning("[%s] backend %s → %d", self.provider_name, action, resp.status_code)
        if resp.status_code in (401, 403):
            raise BackendAuthError(
                f"Backend rejected the session token ({resp.status_code})",
                provider=self.provider_name,
            )
        raise ServerRejectedError(
            f"Backend {action} returned {resp.status_code}",
            provider=self.provider_name,
            status_code=resp.status_code,
        )

    @staticmethod
    def _body(resp: httpx.Response) -> Dict[str, Any]:
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            return {"raw": resp.text}
        return data if isinstance(data, dict) else {"data": data}

    # ── contract ────────────────────────────────────────────────────────

    async def save(self, auth_token: str, provider_token: str) -> Dict[str, Any]:
        """Store *provider_token*; a second save overwrites the first."""
        resp = await self._send(
            "POST",
            "post",
            auth_token,
            {"access_token": provider_token, "refresh_token": provider_token},
        )
        self._raise_for_status(resp, "post")
        logger.info("[%s] token persisted on backend", self.provider_name)
        return self._body(resp)

    async def fetch(self, auth_token: str) -> Optional[BackendRecord]:
        """Return the stored record, or ``None`` when nothing is persisted."""
        resp = await self._send("GET", "get", auth_token)
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, "get")

        data = resp.json() if resp.content else None
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict) or not data.get("access_token"):
            return None
        return BackendRecord(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            raw=data,
        )

    async def delete(self, auth_token: str) -> Dict[str, Any]:
        """Remove the stored record. Missing records count as deleted."""
        resp = await self._send("DELETE", "delete", auth_token)
        if resp.status_code == 404:
            logger.info("[%s] backend had no record to delete", self.provider_name)
            return {"deleted": False}
        self._raise_for_status(resp, "delete")
        logger.info("[%s] token removed from backend", self.provider_name)
        return self._body(resp) or {"deleted": True}

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
