"""
ProviderApiClient — talks to a platform's REST API on behalf of a descriptor.

Maps HTTP failures onto the connector error taxonomy and keeps the most
recent rate-limit snapshot seen in response headers.  Never retries:
retry policy belongs to the orchestrator.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import httpx

from config.settings import config
from connectors.base import BaseConnector
from connectors.errors import (
    AuthorizationFailedError,
    NetworkError,
    RateLimitedError,
    ServerRejectedError,
    UnauthorizedError,
    UnsupportedOperationError,
)
from utils.schemas import Principal, RateLimitSnapshot, ResourcePage

logger = logging.getLogger(__name__)

T = TypeVar("T")

# unreadable or unexpectedly shaped 2xx bodies
_MALFORMED = (ValueError, KeyError, TypeError, AttributeError, IndexError)


def parse_rate_limit(headers: httpx.Headers) -> Optional[RateLimitSnapshot]:
    """Read ``X-RateLimit-*`` headers; ``None`` if the provider sends none."""
    limit = headers.get("x-ratelimit-limit")
    remaining = headers.get("x-ratelimit-remaining")
    if limit is None or remaining is None:
        return None
    try:
        reset_raw = headers.get("x-ratelimit-reset")
        reset_at = (
            datetime.fromtimestamp(int(reset_raw), tz=timezone.utc) if reset_raw else None
        )
        return RateLimitSnapshot(limit=int(limit), remaining=int(remaining), reset_at=reset_at)
    except ValueError:
        logger.debug("Unparseable rate-limit headers: limit=%s remaining=%s", limit, remaining)
        return None


def _retry_after(headers: httpx.Headers) -> Optional[float]:
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class ProviderApiClient:
    """Authenticated REST client for one provider."""

    def __init__(
        self,
        connector: BaseConnector,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.connector = connector
        self._http = http_client or httpx.AsyncClient(timeout=timeout or config.http_timeout)
        self._owns_http = http_client is None
        self.rate_limit: Optional[RateLimitSnapshot] = None

    @property
    def provider_name(self) -> str:
        return self.connector.provider_name

    # ── transport ───────────────────────────────────────────────────────

    async def request(
        self,
        method: str,
        url: str,
        token: str,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            resp = await self._http.request(
                method,
                url,
                headers=self.connector.auth_headers(token),
                params=params,
            )
        except httpx.TransportError as exc:
            raise NetworkError(
                f"{self.connector.display_name} request failed: {exc}",
                provider=self.provider_name,
            ) from exc

        snapshot = parse_rate_limit(resp.headers)
        if snapshot is not None:
            self.rate_limit = snapshot
        self._raise_for_status(resp)
        return resp

    async def get_json(
        self,
        url: str,
        token: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        resp = await self.request("GET", url, token, params=params)
        return self._parsed(resp.json)

    def _parsed(self, parse: Callable[..., T], *args: Any) -> T:
        """Run *parse*; a 2xx body we cannot read counts as a rejected request."""
        try:
            return parse(*args)
        except _MALFORMED as exc:
            raise self._unreadable(exc) from exc

    def _unreadable(self, exc: Exception) -> ServerRejectedError:
        logger.warning("[%s] unreadable response: %r", self.provider_name, exc)
        return ServerRejectedError(
            f"{self.connector.display_name} returned an unexpected response",
            provider=self.provider_name,
        )

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.is_success:
            return
        status = resp.status_code
        logger.warning(
            "[%s] %s %s → %d",
            self.provider_name, resp.request.method, resp.request.url.path, status,
        )
        if status == 429 or (status == 403 and resp.headers.get("x-ratelimit-remaining") == "0"):
            raise RateLimitedError(
                f"{self.connector.display_name} rate limit reached",
                provider=self.provider_name,
                retry_after=_retry_after(resp.headers),
                reset_at=self.rate_limit.reset_at if self.rate_limit else None,
            )
        if status in (401, 403):
            raise UnauthorizedError(
                f"{self.connector.display_name} rejected the token ({status})",
                provider=self.provider_name,
            )
        raise ServerRejectedError(
            f"{self.connector.display_name} API error: {status}",
            provider=self.provider_name,
            status_code=status,
        )

    # ── contract ────────────────────────────────────────────────────────

    async def validate(self, token: str) -> Principal:
        """Fetch the profile behind *token*; raises on any rejection."""
        data = await self.get_json(self.connector.profile_url, token)
        return self._parsed(self.connector.parse_principal, data)

    async def fetch_stats_page(self, token: str, cursor: Optional[str] = None) -> ResourcePage:
        url, params = self.connector.stats_request(cursor)
        resp = await self.request("GET", url, token, params=params)
        return self._parsed(self.connector.parse_stats_page, resp)

    async def summarize(
        self,
        token: str,
        principal: Optional[Principal],
        resources: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        try:
            return await self.connector.summarize(self, token, principal, resources)
        except _MALFORMED as exc:
            raise self._unreadable(exc) from exc

    async def fetch_deployments(self, token: str, resource_id: str) -> List[Dict[str, Any]]:
        target = self.connector.deployments_request(resource_id)
        if target is None:
            raise UnsupportedOperationError(
                f"{self.connector.display_name} has no deployments",
                provider=self.provider_name,
            )
        url, params = target
        data = await self.get_json(url, token, params)
        return self._parsed(self.connector.parse_deployments, data)

    async def fetch_rate_limit(self, token: str) -> Optional[RateLimitSnapshot]:
        """Ask the dedicated endpoint where one exists, else report headers."""
        if self.connector.rate_limit_url is None:
            return self.rate_limit
        data = await self.get_json(self.connector.rate_limit_url, token)
        snapshot = self._parsed(self.connector.parse_rate_limit_body, data)
        if snapshot is not None:
            self.rate_limit = snapshot
        return self.rate_limit

    async def language_usage(
        self,
        token: str,
        resources: List[Dict[str, Any]],
        top_n: int,
    ) -> List[Tuple[str, int]]:
        try:
            return await self.connector.language_usage(self, token, resources, top_n)
        except _MALFORMED as exc:
            raise self._unreadable(exc) from exc

    async def exchange_code(self, code: str) -> str:
        try:
            return await self.connector.exchange_code(self._http, code)
        except httpx.TransportError as exc:
            raise NetworkError(
                f"{self.connector.display_name} token exchange failed: {exc}",
                provider=self.provider_name,
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise AuthorizationFailedError(
                f"{self.connector.display_name} token exchange returned "
                f"{exc.response.status_code}",
                provider=self.provider_name,
            ) from exc
        except _MALFORMED as exc:
            raise AuthorizationFailedError(
                f"{self.connector.display_name} token exchange returned an unreadable body",
                provider=self.provider_name,
            ) from exc

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
