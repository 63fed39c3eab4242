"""
FirebaseConnector — Google OAuth2 web flow for the Firebase Management API.
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

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
_FIREBASE_API = "https://firebase.googleapis.com/v1beta1"


class FirebaseConnector(BaseConnector):
    authorize_endpoint = _GOOGLE_AUTH_URL

    @property
    def provider(self) -> Provider:
        return Provider.FIREBASE

    @property
    def display_name(self) -> str:
        return "Firebase"

    @property
    def scopes(self) -> List[str]:
        return [
            "https://www.googleapis.com/auth/firebase.readonly",
            "https://www.googleapis.com/auth/userinfo.email",
        ]

    @property
    def icon(self) -> str:
        return "🔥"

    @property
    def client_id(self) -> str:
        return config.firebase_client_id

    @property
    def supports_oauth(self) -> bool:
        return bool(config.firebase_client_id and config.firebase_client_secret)

    def auth_params(self, state: str) -> Dict[str, str]:
        params = super().auth_params(state)
        params["prompt"] = "consent"
        return params

    async def exchange_code(self, client: httpx.AsyncClient, code: str) -> str:
        resp = await client.post(
            _GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": config.firebase_client_id,
                "client_secret": config.firebase_client_secret,
                "redirect_uri": self.redirect_uri(),
                "grant_type": "authorization_code",
            },
        )
        resp.raise_for_status()
        token = resp.json().get("access_token")
        if not token:
            raise AuthorizationFailedError("Google returned no access token", provider=self.provider_name)
        return token

    @property
    def profile_url(self) -> str:
        return _GOOGLE_USERINFO_URL

    def parse_principal(self, data: Any) -> Principal:
        return Principal(
            username=data.get("email") or data.get("id", ""),
            email=data.get("email"),
            name=data.get("name"),
            avatar_url=data.get("picture"),
            account_id=data.get("id"),
            raw=data,
        )

    def stats_request(self, cursor: Optional[str]) -> RequestSpec:
        params: Dict[str, Any] = {"pageSize": 100}
        if cursor:
            params["pageToken"] = cursor
        return f"{_FIREBASE_API}/projects", params

    def parse_stats_page(self, response: httpx.Response) -> ResourcePage:
        body = response.json()
        return ResourcePage(
            items=body.get("results", []),
            next_cursor=body.get("nextPageToken") or None,
        )

    async def summarize(
        self,
        api: "ProviderApiClient",
        token: str,
        principal: Optional[Principal],
        resources: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        return {
            "total": len(resources),
            "states": dict(rank_by_weight((p.get("state"), 1) for p in resources)),
        }
