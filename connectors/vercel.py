"""
VercelConnector — personal access token only.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx

from connectors.base import BaseConnector, RequestSpec
from utils.aggregation import rank_by_weight
from utils.schemas import Principal, Provider, ResourcePage

if TYPE_CHECKING:
    from connectors.provider_client import ProviderApiClient

_VERCEL_API = "https://api.vercel.com"


class VercelConnector(BaseConnector):
    @property
    def provider(self) -> Provider:
        return Provider.VERCEL

    @property
    def display_name(self) -> str:
        return "Vercel"

    @property
    def icon(self) -> str:
        return "▲"

    @property
    def profile_url(self) -> str:
        return f"{_VERCEL_API}/v2/user"

    def parse_principal(self, data: Any) -> Principal:
        user = data.get("user", data)
        return Principal(
            username=user.get("username", ""),
            email=user.get("email"),
            name=user.get("name"),
            account_id=user.get("id") or user.get("uid"),
            raw=user,
        )

    def stats_request(self, cursor: Optional[str]) -> RequestSpec:
        params: Dict[str, Any] = {"limit": 100}
        if cursor:
            params["until"] = cursor
        return f"{_VERCEL_API}/v9/projects", params

    def parse_stats_page(self, response: httpx.Response) -> ResourcePage:
        body = response.json()
        nxt = (body.get("pagination") or {}).get("next")
        return ResourcePage(
            items=body.get("projects", []),
            next_cursor=str(nxt) if nxt is not None else None,
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
            "frameworks": dict(rank_by_weight((p.get("framework"), 1) for p in resources)),
        }

    def deployments_request(self, resource_id: str) -> Optional[RequestSpec]:
        return f"{_VERCEL_API}/v6/deployments", {"projectId": resource_id, "limit": 20}

    def parse_deployments(self, data: Any) -> List[Dict[str, Any]]:
        return list(data.get("deployments", []))
