"""
SupabaseConnector — Management API token or OAuth in a new tab.

The Management API has no user profile endpoint, so the first
organization the token can see stands in as the principal.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx

from config.settings import config
from connectors.base import BaseConnector, RequestSpec
from connectors.errors import AuthorizationFailedError
from utils.aggregation import rank_by_weight
from utils.schemas import Principal, Provider, ResourcePage

if TYPE_CHECKING:
    from connectors.provider_client import ProviderApiClient

_SUPABASE_API = "https://api.supabase.com/v1"
_SUPABASE_AUTH_URL = f"{_SUPABASE_API}/oauth/authorize"
_SUPABASE_TOKEN_URL = f"{_SUPABASE_API}/oauth/token"


class SupabaseConnector(BaseConnector):
    authorize_endpoint = _SUPABASE_AUTH_URL

    @property
    def provider(self) -> Provider:
        return Provider.SUPABASE

    @property
    def display_name(self) -> str:
        return "Supabase"

    @property
    def scopes(self) -> List[str]:
        return ["projects", "read", "organizations"]

    @property
    def icon(self) -> str:
        return "⚡"

    @property
    def client_id(self) -> str:
        return config.supabase_client_id

    @property
    def supports_oauth(self) -> bool:
        return bool(config.supabase_client_id and config.supabase_client_secret)

    async def exchange_code(self, client: httpx.AsyncClient, code: str) -> str:
        resp = await client.post(
            _SUPABASE_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri(),
            },
            auth=(config.supabase_client_id, config.supabase_client_secret),
            headers={"Accept": "application/json"},
        )
        resp.raise_for_status()
        token = resp.json().get("access_token")
        if not token:
            raise AuthorizationFailedError("Supabase returned no access token", provider=self.provider_name)
        return token

    @property
    def profile_url(self) -> str:
        return f"{_SUPABASE_API}/organizations"

    def parse_principal(self, data: Any) -> Principal:
        orgs = list(data or [])
        first = orgs[0] if orgs else {}
        return Principal(
            username=first.get("name") or first.get("id") or "supabase",
            account_id=first.get("id"),
            raw={"organizations": orgs},
        )

    def stats_request(self, cursor: Optional[str]) -> RequestSpec:
        return f"{_SUPABASE_API}/projects", None

    def parse_stats_page(self, response: httpx.Response) -> ResourcePage:
        # single page: the endpoint returns every project at once
        return ResourcePage(items=response.json(), next_cursor=None)

    async def summarize(
        self,
        api: "ProviderApiClient",
        token: str,
        principal: Optional[Principal],
        resources: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        return {
            "total": len(resources),
            "regions": dict(rank_by_weight((p.get("region"), 1) for p in resources)),
            "healthy": sum(1 for p in resources if p.get("status") == "ACTIVE_HEALTHY"),
        }
