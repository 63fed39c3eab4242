"""
BaseConnector — per-provider descriptor for the generic connection engine.

Every provider (GitHub, Netlify, Vercel, …) subclasses this and declares
how to validate a token, how to page through its resources, how to build
its authorize URL and where the application backend keeps its token.
The connection state machine itself lives in the orchestrator and is
shared by all providers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from config.settings import config
from connectors.errors import ProviderNotConfiguredError, UnsupportedOperationError
from utils.schemas import Principal, Provider, RateLimitSnapshot, ResourcePage

if TYPE_CHECKING:
    from connectors.provider_client import ProviderApiClient

RequestSpec = Tuple[str, Optional[Dict[str, Any]]]


def link_next(response: httpx.Response) -> Optional[str]:
    """Return the ``rel="next"`` URL of a ``Link`` header, if any."""
    return response.links.get("next", {}).get("url")


class BaseConnector(ABC):
    """Abstract descriptor for one developer platform."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider(self) -> Provider:
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'GitHub', 'Netlify', 'Vercel', …"""
        ...

    @property
    def provider_name(self) -> str:
        return self.provider.value

    @property
    def scopes(self) -> List[str]:
        return []

    @property
    def icon(self) -> str:
        return "🔗"

    @property
    def backend_endpoint_prefix(self) -> str:
        """Path prefix of the app backend's ``-get`` / ``-post`` / ``-delete`` routes."""
        return f"{self.provider_name}/{self.provider_name}"

    # ── OAuth flow ──────────────────────────────────────────────────────

    authorize_endpoint: Optional[str] = None
    response_type: str = "code"

    @property
    def client_id(self) -> str:
        return ""

    @property
    def supports_oauth(self) -> bool:
        return bool(self.authorize_endpoint and self.client_id)

    def redirect_uri(self) -> str:
        return config.redirect_uri(self.provider_name)

    def auth_params(self, state: str) -> Dict[str, str]:
        return {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri(),
            "response_type": self.response_type,
            "scope": " ".join(self.scopes),
            "state": state,
        }

    def get_auth_url(self, state: str) -> str:
        """
        Build the provider's authorize URL.

        Parameters
        ----------
        state : str
            CSRF nonce recorded by the poller.
        """
        if not self.supports_oauth:
            raise ProviderNotConfiguredError(
                f"{self.display_name} OAuth is not configured",
                provider=self.provider_name,
            )
        return f"{self.authorize_endpoint}?{urlencode(self.auth_params(state))}"

    async def exchange_code(self, client: httpx.AsyncClient, code: str) -> str:
        """Exchange an authorization code for an access token."""
        raise UnsupportedOperationError(
            f"{self.display_name} does not use an authorization code",
            provider=self.provider_name,
        )

    # ── Provider REST API ───────────────────────────────────────────────

    def auth_headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    @property
    @abstractmethod
    def profile_url(self) -> str:
        """Endpoint whose success proves the token is valid."""
        ...

    @abstractmethod
    def parse_principal(self, data: Any) -> Principal:
        ...

    @abstractmethod
    def stats_request(self, cursor: Optional[str]) -> RequestSpec:
        """URL + query params for the page at *cursor* (``None`` = first page)."""
        ...

    @abstractmethod
    def parse_stats_page(self, response: httpx.Response) -> ResourcePage:
        ...

    async def summarize(
        self,
        api: "ProviderApiClient",
        token: str,
        principal: Optional[Principal],
        resources: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Derived figures shown next to the resource list."""
        return {"total": len(resources)}

    def deployments_request(self, resource_id: str) -> Optional[RequestSpec]:
        return None

    def parse_deployments(self, data: Any) -> List[Dict[str, Any]]:
        return list(data or [])

    rate_limit_url: Optional[str] = None

    def parse_rate_limit_body(self, data: Any) -> Optional[RateLimitSnapshot]:
        return None

    async def language_usage(
        self,
        api: "ProviderApiClient",
        token: str,
        resources: List[Dict[str, Any]],
        top_n: int,
    ) -> List[Tuple[str, int]]:
        raise UnsupportedOperationError(
            f"{self.display_name} does not report language usage",
            provider=self.provider_name,
        )
