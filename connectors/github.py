"""
GitHubConnector — personal access token or OAuth App code flow.

Stats are the user's repositories (``Link``-header pagination) plus a
summary of stars, forks, languages and recent activity.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import httpx

from config.settings import config
from connectors.base import BaseConnector, RequestSpec, link_next
from connectors.errors import AuthorizationFailedError, ConnectorError, UnauthorizedError
from utils.aggregation import rank_by_weight
from utils.schemas import Principal, Provider, RateLimitSnapshot, ResourcePage

if TYPE_CHECKING:
    from connectors.provider_client import ProviderApiClient

logger = logging.getLogger(__name__)

# GitHub OAuth2 endpoints
_GH_AUTH_URL = "https://github.com/login/oauth/authorize"
_GH_TOKEN_URL = "https://github.com/login/oauth/access_token"
_GH_API = "https://api.github.com"


class GitHubConnector(BaseConnector):
    """Descriptor for GitHub."""

    authorize_endpoint = _GH_AUTH_URL
    rate_limit_url = f"{_GH_API}/rate_limit"

    @property
    def provider(self) -> Provider:
        return Provider.GITHUB

    @property
    def display_name(self) -> str:
        return "GitHub"

    @property
    def scopes(self) -> List[str]:
        return ["repo", "read:user", "user:email"]

    @property
    def icon(self) -> str:
        return "🐙"

    @property
    def client_id(self) -> str:
        return config.github_client_id

    @property
    def supports_oauth(self) -> bool:
        return bool(config.github_client_id and config.github_client_secret)

    def auth_params(self, state: str) -> Dict[str, str]:
        params = super().auth_params(state)
        params.pop("response_type")
        return params

    async def exchange_code(self, client: httpx.AsyncClient, code: str) -> str:
        resp = await client.post(
            _GH_TOKEN_URL,
            data={
                "client_id": config.github_client_id,
                "client_secret": config.github_client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri(),
            },
            headers={"Accept": "application/json"},
        )
        resp.raise_for_status()
        token_data = resp.json()
        if "error" in token_data or not token_data.get("access_token"):
            raise AuthorizationFailedError(
                f"GitHub OAuth error: {token_data.get('error_description', token_data.get('error'))}",
                provider=self.provider_name,
            )
        return token_data["access_token"]

    def auth_headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    # ── profile & repositories ──────────────────────────────────────────

    @property
    def profile_url(self) -> str:
        return f"{_GH_API}/user"

    def parse_principal(self, data: Any) -> Principal:
        return Principal(
            username=data["login"],
            email=data.get("email"),
            name=data.get("name"),
            avatar_url=data.get("avatar_url"),
            account_id=str(data.get("id", "")),
            raw=data,
        )

    def stats_request(self, cursor: Optional[str]) -> RequestSpec:
        if cursor:
            return cursor, None
        return f"{_GH_API}/user/repos", {
            "per_page": 100,
            "sort": "updated",
            "affiliation": "owner,collaborator,organization_member",
        }

    def parse_stats_page(self, response: httpx.Response) -> ResourcePage:
        return ResourcePage(items=response.json(), next_cursor=link_next(response))

    async def summarize(
        self,
        api: "ProviderApiClient",
        token: str,
        principal: Optional[Principal],
        resources: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        languages = rank_by_weight((r.get("language"), 1) for r in resources)
        summary: Dict[str, Any] = {
            "total": len(resources),
            "stars": sum(r.get("stargazers_count", 0) for r in resources),
            "forks": sum(r.get("forks_count", 0) for r in resources),
            "private_repos": sum(1 for r in resources if r.get("private")),
            "languages": dict(languages),
            "recent_activity": [],
        }
        if principal is not None:
            summary["public_repos"] = principal.raw.get("public_repos", 0)
            summary["followers"] = principal.raw.get("followers", 0)
            summary["public_gists"] = principal.raw.get("public_gists", 0)
            summary["recent_activity"] = await self._recent_activity(api, token, principal.username)
        return summary

    async def _recent_activity(
        self,
        api: "ProviderApiClient",
        token: str,
        login: str,
    ) -> List[Dict[str, Any]]:
        try:
            events = await api.get_json(
                f"{_GH_API}/users/{login}/events",
                token,
                {"per_page": 10},
            )
        except UnauthorizedError:
            raise
        except ConnectorError as exc:
            logger.info("GitHub events unavailable for %s: %s", login, exc)
            return []
        return [
            {
                "id": event.get("id"),
                "type": event.get("type"),
                "repo": (event.get("repo") or {}).get("name"),
                "created_at": event.get("created_at"),
            }
            for event in events[: config.github_events_limit]
        ]

    # ── rate limit & languages ──────────────────────────────────────────

    def parse_rate_limit_body(self, data: Any) -> Optional[RateLimitSnapshot]:
        core = (data.get("resources") or {}).get("core")
        if not core:
            return None
        return RateLimitSnapshot(
            limit=core["limit"],
            remaining=core["remaining"],
            reset_at=datetime.fromtimestamp(core["reset"], tz=timezone.utc),
        )

    async def language_usage(
        self,
        api: "ProviderApiClient",
        token: str,
        resources: List[Dict[str, Any]],
        top_n: int,
    ) -> List[Tuple[str, int]]:
        """Bytes per language across all repos, largest first."""
        pairs: List[Tuple[str, int]] = []
        for repo in resources:
            url = repo.get("languages_url")
            if not url:
                continue
            breakdown = await api.get_json(url, token)
            pairs.extend(breakdown.items())
        return rank_by_weight(pairs, top_n)
