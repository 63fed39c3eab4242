"""
NetlifyConnector — personal access token or OAuth in a new tab.

Without a client secret the implicit grant is used and the token comes
back in the callback URL fragment; with one, the code flow is used.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx

from config.settings import config
from connectors.base import BaseConnector, RequestSpec, link_next
from connectors.errors import AuthorizationFailedError
from utils.schemas import Principal, Provider, ResourcePage

if TYPE_CHECKING:
    from connectors.provider_client import ProviderApiClient

_NETLIFY_AUTH_URL = "https://app.netlify.com/authorize"
_NETLIFY_TOKEN_URL = "https://api.netlify.com/oauth/token"
_NETLIFY_API = "https://api.netlify.com/api/v1"


class NetlifyConnector(BaseConnector):
    authorize_endpoint = _NETLIFY_AUTH_URL

    @property
    def provider(self) -> Provider:
        return Provider.NETLIFY

    @property
    def display_name(self) -> str:
        return "Netlify"

    @property
    def icon(self) -> str:
        return "🌐"

    @property
    def client_id(self) -> str:
        return config.netlify_client_id

    @property
    def response_type(self) -> str:  # type: ignore[override]
        return "code" if config.netlify_client_secret else "token"

    def auth_params(self, state: str) -> Dict[str, str]:
        params = super().auth_params(state)
        params.pop("scope")
        return params

    async def exchange_code(self, client: httpx.AsyncClient, code: str) -> str:
        resp = await client.post(
            _NETLIFY_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": config.netlify_client_id,
                "client_secret": config.netlify_client_secret,
                "redirect_uri": self.redirect_uri(),
            },
            headers={"Accept": "application/json"},
        )
        resp.raise_for_status()
        token = resp.json().get("access_token")
        if not token:
            raise AuthorizationFailedError("Netlify returned no access token", provider=self.provider_name)
        return token

    @property
    def profile_url(self) -> str:
        return f"{_NETLIFY_API}/user"

    def parse_principal(self, data: Any) -> Principal:
        return Principal(
            username=data.get("slug") or data.get("full_name") or data.get("email", ""),
            email=data.get("email"),
            name=data.get("full_name"),
            avatar_url=data.get("avatar_url"),
            account_id=data.get("id"),
            raw=data,
        )

    def stats_request(self, cursor: Optional[str]) -> RequestSpec:
        if cursor:
            return cursor, None
        return f"{_NETLIFY_API}/sites", {"page": 1, "per_page": 100}

    def parse_stats_page(self, response: httpx.Response) -> ResourcePage:
        return ResourcePage(items=response.json(), next_cursor=link_next(response))

    async def summarize(
        self,
        api: "ProviderApiClient",
        token: str,
        principal: Optional[Principal],
        resources: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        published = [
            (site.get("published_deploy") or {}).get("published_at")
            for site in resources
        ]
        published = [p for p in published if p]
        return {
            "total": len(resources),
            "last_deploy_time": max(published) if published else None,
        }

    def deployments_request(self, resource_id: str) -> Optional[RequestSpec]:
        return f"{_NETLIFY_API}/sites/{resource_id}/deploys", {"per_page": 20}
