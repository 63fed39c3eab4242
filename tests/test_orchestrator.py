"""
Integration-level tests for the ConnectionOrchestrator.

GitHub, Netlify, Vercel and the application backend are faked behind one
``httpx.MockTransport`` so the real clients, descriptors and poller run.
"""

import asyncio
import json
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import httpx
import pytest

from config.settings import config
from connectors.errors import (
    AuthCancelledError,
    CSRFMismatchError,
    NetworkError,
    ProviderNotConfiguredError,
    ServerRejectedError,
    UnauthorizedError,
)
from core.factory import build_orchestrator
from core.transports import MessageTransport
from utils.schemas import CallbackPayload, ConnectionStatus, PollerState, Provider

_RATE_HEADERS = {"x-ratelimit-limit": "5000", "x-ratelimit-remaining": "4999", "x-ratelimit-reset": "1700000000"}


class FakeServices:
    """In-memory GitHub, Netlify and Vercel APIs plus the application backend."""

    def __init__(self, repo_pages: Optional[List[List[Dict]]] = None):
        self.valid_tokens = {"ghp_valid", "nf_valid", "abc"}
        self.backend: Dict[str, str] = {}
        self.repo_pages = repo_pages or [
            [{"id": 1, "name": "a", "language": "Python", "stargazers_count": 3, "forks_count": 1}]
        ]
        self.calls: List[str] = []
        self.backend_status: Optional[int] = None
        self.backend_down = False
        self.repos_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(f"{request.method} {request.url.host}{request.url.path}")
        host = request.url.host
        if host == "backend.test":
            return self._backend(request)
        if host == "github.com":
            return httpx.Response(200, json={"access_token": "ghp_valid", "token_type": "bearer"})
        if host == "api.netlify.com" and request.url.path == "/oauth/token":
            return httpx.Response(200, json={"access_token": "nf_valid"})
        token = request.headers.get("authorization", "").replace("Bearer ", "")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"message": "Bad credentials"})
        if host == "api.github.com":
            return self._github(request)
        if host == "api.netlify.com":
            return self._netlify(request)
        if host == "api.vercel.com":
            return self._vercel(request)
        return httpx.Response(404)

    def _backend(self, request: httpx.Request) -> httpx.Response:
        if self.backend_down:
            raise httpx.ConnectError("backend down", request=request)
        if self.backend_status is not None:
            return httpx.Response(self.backend_status)
        provider, action = request.url.path.strip("/").split("/")[1].rsplit("-", 1)
        if action == "post":
            self.backend[provider] = json.loads(request.content)["access_token"]
            return httpx.Response(200, json={"ok": True})
        if action == "get":
            if provider not in self.backend:
                return httpx.Response(404)
            return httpx.Response(200, json={"access_token": self.backend[provider]})
        if self.backend.pop(provider, None) is None:
            return httpx.Response(404)
        return httpx.Response(200, json={"deleted": True})

    def _github(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/user":
            return httpx.Response(200, headers=_RATE_HEADERS, json={"login": "octocat", "id": 1, "public_repos": 2})
        if path == "/user/repos":
            if self.repos_status != 200:
                return httpx.Response(self.repos_status)
            page = int(request.url.params.get("page", "1"))
            headers = dict(_RATE_HEADERS)
            if page < len(self.repo_pages):
                headers["link"] = f'<https://api.github.com/user/repos?page={page + 1}>; rel="next"'
            return httpx.Response(200, headers=headers, json=self.repo_pages[page - 1])
        if path == "/users/octocat/events":
            return httpx.Response(200, json=[{"id": "e1", "type": "PushEvent", "repo": {"name": "octocat/a"}}])
        if path == "/rate_limit":
            return httpx.Response(
                200, json={"resources": {"core": {"limit": 5000, "remaining": 4000, "reset": 1700000000}}}
            )
        if path.endswith("/languages"):
            return httpx.Response(200, json={"Python": 120, "Shell": 10})
        return httpx.Response(404)

    def _netlify(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/v1/user":
            return httpx.Response(200, json={"id": "u1", "slug": "nelly", "email": "n@x.io"})
        if path == "/api/v1/sites":
            return httpx.Response(200, json=[{"id": "site-1", "name": "blog"}])
        if path == "/api/v1/sites/site-1/deploys":
            return httpx.Response(200, json=[{"id": "d1", "state": "ready"}])
        return httpx.Response(404)

    def _vercel(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v2/user":
            return httpx.Response(200, json={"user": {"username": "alice", "id": "u_alice"}})
        if request.url.path == "/v9/projects":
            return httpx.Response(200, json={"projects": [{"id": "p1", "framework": "nextjs"}], "pagination": {"next": None}})
        return httpx.Response(404)

    def count(self, fragment: str) -> int:
        return sum(1 for c in self.calls if fragment in c)


def _build(services: FakeServices, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(services.handler))
    transport = MessageTransport()
    orch = build_orchestrator(
        "session-token",
        transports=[transport],
        http_client=http,
        backend_base_url="http://backend.test",
        poll_interval=0.01,
        poll_timeout=1.0,
        opener=MagicMock(),
        **kwargs,
    )
    return orch, transport


async def _connected(services=None, **kwargs):
    services = services or FakeServices()
    orch, transport = _build(services, **kwargs)
    await orch.connect("github", "ghp_valid")
    await orch.drain()
    return orch, services, transport


async def _pending(orch, provider="github"):
    for _ in range(100):
        pending = orch.poller.pending(provider)
        if pending is not None:
            return pending
        await asyncio.sleep(0)
    raise AssertionError("poller never armed")


@pytest.fixture
def github_oauth(monkeypatch):
    monkeypatch.setattr(config, "github_client_id", "gh-client")
    monkeypatch.setattr(config, "github_client_secret", "gh-secret")


class TestConnectWithToken:
    @pytest.mark.asyncio
    async def test_vercel_token_saved_exactly_once(self):
        services = FakeServices()
        orch, _ = _build(services)

        conn = await orch.connect("vercel", "abc")
        await orch.drain()

        assert conn.credential == "abc"
        assert conn.principal.username == "alice"
        assert services.count("POST backend.test/vercel/vercel-post") == 1
        assert services.backend["vercel"] == "abc"
        assert orch.store.get("vercel").stats.summary["frameworks"] == {"nextjs": 1}

    @pytest.mark.asyncio
    async def test_valid_token_connects_and_persists(self):
        services = FakeServices()
        orch, _ = _build(services)

        conn = await orch.connect("github", "ghp_valid")

        assert conn.status == ConnectionStatus.CONNECTED
        assert conn.principal.username == "octocat"
        assert conn.validated_at is not None
        assert conn.rate_limit.remaining == 4999
        assert services.backend["github"] == "ghp_valid"
        # validate before persist
        assert services.calls.index("GET api.github.com/user") < services.calls.index(
            "POST backend.test/github/github-post"
        )

    @pytest.mark.asyncio
    async def test_stats_refresh_follows_connect(self):
        orch, _, _ = await _connected()
        conn = orch.store.get("github")

        assert conn.trusted_stats is not None
        assert conn.stats.total == 1
        assert conn.stats.summary["stars"] == 3
        assert conn.stats.summary["languages"] == {"Python": 1}
        assert conn.stats.summary["recent_activity"][0]["type"] == "PushEvent"

    @pytest.mark.asyncio
    async def test_invalid_token_is_never_persisted(self):
        services = FakeServices()
        orch, _ = _build(services)

        with pytest.raises(UnauthorizedError):
            await orch.connect("github", "ghp_wrong")

        conn = orch.store.get("github")
        assert conn.status == ConnectionStatus.DISCONNECTED
        assert conn.principal is None
        assert conn.last_error
        assert services.backend == {}
        assert services.count("github-post") == 0
        assert len(orch.notifications) == 1
        assert orch.notifications[0].error_code == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_persist_failure_rolls_back(self):
        services = FakeServices()
        services.backend_status = 500
        orch, _ = _build(services)

        with pytest.raises(ServerRejectedError):
            await orch.connect("github", "ghp_valid")

        conn = orch.store.get("github")
        assert conn.credential is None
        assert conn.principal is None
        assert not conn.is_connecting and not conn.is_verifying
        assert len(orch.notifications) == 1

    @pytest.mark.asyncio
    async def test_empty_token_rejected(self):
        orch, _ = _build(FakeServices())
        with pytest.raises(UnauthorizedError):
            await orch.connect("github", "   ")
        assert len(orch.notifications) == 1

    @pytest.mark.asyncio
    async def test_notifier_called_once(self):
        notifier = MagicMock()
        orch, _ = _build(FakeServices(), notifier=notifier)
        with pytest.raises(UnauthorizedError):
            await orch.connect("github", "ghp_wrong")
        notifier.assert_called_once()

    @pytest.mark.asyncio
    async def test_principal_never_without_credential(self):
        services = FakeServices()
        orch, _ = _build(services)
        snapshots = []
        orch.store.subscribe(lambda p, c: snapshots.append((c.credential, c.principal)))

        await orch.connect("github", "ghp_valid")
        await orch.drain()
        with pytest.raises(UnauthorizedError):
            await orch.connect("github", "ghp_wrong")
        await orch.disconnect("github")

        assert snapshots
        assert all(cred for cred, principal in snapshots if principal is not None)


    @pytest.mark.asyncio
    async def test_unreadable_profile_notifies_once(self):
        services = FakeServices()
        original = services._github

        def proxy_page(request):
            if request.url.path == "/user":
                return httpx.Response(200, text="<html>proxy</html>")
            return original(request)

        services._github = proxy_page
        orch, _ = _build(services)

        with pytest.raises(ServerRejectedError):
            await orch.connect("github", "ghp_valid")

        assert len(orch.notifications) == 1
        assert orch.store.get("github").status == ConnectionStatus.DISCONNECTED
        assert "github" not in services.backend


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_backend_deleted_before_local_state(self):
        orch, services, _ = await _connected()
        seen_at_delete = []

        original = services._backend

        def spy(request):
            if request.method == "DELETE":
                seen_at_delete.append(orch.store.get("github").credential)
            return original(request)

        services._backend = spy
        conn = await orch.disconnect("github")

        assert seen_at_delete == ["ghp_valid"]
        assert conn.status == ConnectionStatus.DISCONNECTED
        assert conn.stats is None
        assert "github" not in services.backend

        user_calls = services.count("GET api.github.com/user")
        conn = await orch.reconcile_on_load("github")
        assert conn.status == ConnectionStatus.DISCONNECTED
        assert services.count("GET api.github.com/user") == user_calls

    @pytest.mark.asyncio
    async def test_failed_delete_keeps_local_state(self):
        orch, services, _ = await _connected()
        services.backend_status = 500

        with pytest.raises(ServerRejectedError):
            await orch.disconnect("github")

        conn = orch.store.get("github")
        assert conn.is_connected
        assert conn.credential == "ghp_valid"

    @pytest.mark.asyncio
    async def test_missing_backend_record_still_disconnects(self):
        orch, services, _ = await _connected()
        services.backend.clear()
        conn = await orch.disconnect("github")
        assert conn.status == ConnectionStatus.DISCONNECTED


class TestRefreshStats:
    @pytest.mark.asyncio
    async def test_all_pages_in_order(self):
        pages = [
            [{"id": 1}, {"id": 2}],
            [{"id": 3}, {"id": 4}],
            [{"id": 5}],
        ]
        orch, services, _ = await _connected(FakeServices(repo_pages=pages))

        assert [r["id"] for r in orch.store.get("github").stats.resources] == [1, 2, 3, 4, 5]
        assert orch.store.get("github").stats.total == 5
        assert services.count("/user/repos") == 3

    @pytest.mark.asyncio
    async def test_noop_when_disconnected(self):
        services = FakeServices()
        orch, _ = _build(services)
        assert await orch.refresh_stats("github") is None
        assert services.calls == []

    @pytest.mark.asyncio
    async def test_unauthorized_forces_disconnect(self):
        orch, services, _ = await _connected()
        services.valid_tokens.clear()

        with pytest.raises(UnauthorizedError):
            await orch.refresh_stats("github")

        conn = orch.store.get("github")
        assert conn.status == ConnectionStatus.DISCONNECTED
        assert conn.principal is None
        assert conn.stats is None
        assert "github" not in services.backend
        assert len(orch.notifications) == 1

    @pytest.mark.asyncio
    async def test_server_error_keeps_connection(self):
        orch, services, _ = await _connected()
        before = orch.store.get("github").stats
        services.repos_status = 500

        with pytest.raises(ServerRejectedError):
            await orch.refresh_stats("github")

        conn = orch.store.get("github")
        assert conn.is_connected
        assert conn.stats is before
        assert not conn.is_refreshing
        assert conn.last_error

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_run(self):
        orch, services, _ = await _connected()
        calls_before = services.count("/user/repos")

        results = await asyncio.gather(orch.refresh_stats("github"), orch.refresh_stats("github"))

        assert results[0] is results[1]
        assert services.count("/user/repos") == calls_before + 1

    @pytest.mark.asyncio
    async def test_shared_failure_notifies_once(self):
        orch, services, _ = await _connected()
        services.repos_status = 503

        results = await asyncio.gather(
            orch.refresh_stats("github"), orch.refresh_stats("github"), return_exceptions=True
        )

        assert all(isinstance(r, ServerRejectedError) for r in results)
        assert len(orch.notifications) == 1

    @pytest.mark.asyncio
    async def test_background_refresh_does_not_notify(self):
        services = FakeServices()
        services.repos_status = 500
        orch, _ = _build(services)
        await orch.connect("github", "ghp_valid")
        await orch.drain()

        assert orch.store.get("github").is_connected
        assert orch.notifications == []


class TestReconcile:
    @pytest.mark.asyncio
    async def test_restores_persisted_token(self):
        services = FakeServices()
        services.backend["github"] = "ghp_valid"
        orch, _ = _build(services)

        conn = await orch.reconcile_on_load("github")
        await orch.drain()

        assert conn.is_connected
        assert orch.store.get("github").trusted_stats is not None

    @pytest.mark.asyncio
    async def test_absent_record_is_disconnected(self):
        orch, _ = _build(FakeServices())
        conn = await orch.reconcile_on_load("github")
        assert conn.status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_rejected_token_disconnects_quietly(self):
        services = FakeServices()
        services.backend["github"] = "ghp_revoked"
        orch, _ = _build(services)

        conn = await orch.reconcile_on_load("github")

        assert conn.status == ConnectionStatus.DISCONNECTED
        assert orch.notifications == []
        assert "github" not in services.backend

        user_calls = services.count("GET api.github.com/user")
        conn = await orch.reconcile_on_load("github")
        assert conn.status == ConnectionStatus.DISCONNECTED
        assert services.count("GET api.github.com/user") == user_calls

    @pytest.mark.asyncio
    async def test_refresh_all_drops_revoked_record(self):
        services = FakeServices()
        services.backend["github"] = "ghp_revoked"
        orch, _ = _build(services)

        with pytest.raises(UnauthorizedError):
            await orch.refresh_all("github")

        assert len(orch.notifications) == 1
        assert "github" not in services.backend
        assert orch.store.get("github").status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stale_stats_hidden_after_failed_refresh(self):
        pages = [[{"id": 1, "languages_url": "https://api.github.com/repos/octocat/a/languages"}]]
        orch, services, _ = await _connected(FakeServices(repo_pages=pages))
        assert orch.store.get("github").public_view()["stats"] is not None

        services.repos_status = 500
        await orch.reconcile_on_load("github")
        await orch.drain()

        conn = orch.store.get("github")
        assert conn.is_connected
        assert conn.stats is not None
        assert conn.trusted_stats is None
        assert conn.public_view()["stats"] is None
        assert await orch.language_usage("github") == []

    @pytest.mark.asyncio
    async def test_transient_failure_keeps_state(self):
        orch, services, _ = await _connected()
        services.backend_down = True

        conn = await orch.reconcile_on_load("github")

        assert conn.is_connected
        assert not conn.is_verifying
        assert orch.notifications == []

    @pytest.mark.asyncio
    async def test_start_reconcile_covers_every_provider(self):
        services = FakeServices()
        services.backend["netlify"] = "nf_valid"
        orch, _ = _build(services)

        tasks = orch.start_reconcile()
        assert len(tasks) == len(Provider)
        await orch.drain()

        assert orch.store.get("netlify").is_connected
        assert orch.store.get("github").status == ConnectionStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_refresh_all_reports_missing_connection(self):
        orch, _ = _build(FakeServices())
        assert await orch.refresh_all("github") is False

    @pytest.mark.asyncio
    async def test_refresh_all_notifies_on_network_failure(self):
        services = FakeServices()
        services.backend_down = True
        orch, _ = _build(services)
        with pytest.raises(NetworkError):
            await orch.refresh_all("github")
        assert len(orch.notifications) == 1


class TestOAuthConnect:
    @pytest.mark.asyncio
    async def test_code_flow_connects(self, github_oauth):
        services = FakeServices()
        orch, transport = _build(services)

        task = asyncio.create_task(orch.connect("github"))
        pending = await _pending(orch)
        assert orch.store.get("github").is_connecting
        assert "client_id=gh-client" in pending.authorize_url

        await transport.deliver(CallbackPayload(provider=Provider.GITHUB, state=pending.state, code="abc"))
        conn = await task

        assert conn.is_connected
        assert services.count("POST github.com/login/oauth/access_token") == 1
        assert services.backend["github"] == "ghp_valid"
        assert orch.poller.state("github") == PollerState.IDLE

    @pytest.mark.asyncio
    async def test_state_mismatch_never_exchanges(self, github_oauth):
        services = FakeServices()
        orch, transport = _build(services)

        task = asyncio.create_task(orch.connect("github"))
        await _pending(orch)
        await transport.deliver(CallbackPayload(provider=Provider.GITHUB, state="forged", code="abc"))

        with pytest.raises(CSRFMismatchError):
            await task
        assert services.count("github.com/login/oauth") == 0
        assert not orch.store.get("github").is_connecting
        assert len(orch.notifications) == 1

    @pytest.mark.asyncio
    async def test_netlify_code_flow(self, monkeypatch):
        monkeypatch.setattr(config, "netlify_client_id", "nf-client")
        monkeypatch.setattr(config, "netlify_client_secret", "nf-secret")
        services = FakeServices()
        orch, transport = _build(services)

        task = asyncio.create_task(orch.connect("netlify"))
        pending = await _pending(orch, "netlify")
        await transport.deliver(CallbackPayload(provider=Provider.NETLIFY, state=pending.state, code="c1"))
        conn = await task

        assert conn.principal.username == "nelly"
        assert services.count("POST api.netlify.com/oauth/token") == 1
        assert orch.poller.state("netlify") == PollerState.IDLE

    @pytest.mark.asyncio
    async def test_netlify_mismatch_never_exchanges(self, monkeypatch):
        monkeypatch.setattr(config, "netlify_client_id", "nf-client")
        monkeypatch.setattr(config, "netlify_client_secret", "nf-secret")
        services = FakeServices()
        orch, transport = _build(services)

        task = asyncio.create_task(orch.connect("netlify"))
        await _pending(orch, "netlify")
        await transport.deliver(CallbackPayload(provider=Provider.NETLIFY, state="different", code="c1"))

        with pytest.raises(CSRFMismatchError):
            await task
        assert services.count("/oauth/token") == 0

    @pytest.mark.asyncio
    async def test_netlify_implicit_token(self, monkeypatch):
        monkeypatch.setattr(config, "netlify_client_id", "nf-client")
        monkeypatch.setattr(config, "netlify_client_secret", "")
        services = FakeServices()
        orch, transport = _build(services)

        pending = await orch.begin_connect("netlify")
        assert "response_type=token" in pending.authorize_url
        await transport.deliver(
            CallbackPayload(provider=Provider.NETLIFY, state=pending.state, access_token="nf_valid")
        )
        await orch.drain()

        assert orch.store.get("netlify").is_connected
        assert services.count("/oauth/token") == 0

    @pytest.mark.asyncio
    async def test_begin_connect_completes_in_background(self, github_oauth):
        orch, transport = _build(FakeServices())

        pending = await orch.begin_connect("github")
        await transport.deliver(CallbackPayload(provider=Provider.GITHUB, state=pending.state, code="abc"))
        await orch.drain()

        assert orch.store.get("github").is_connected

    @pytest.mark.asyncio
    async def test_cancel_connect(self, github_oauth):
        orch, _ = _build(FakeServices())
        await orch.begin_connect("github")

        assert await orch.cancel_connect("github") is True
        await orch.drain()

        conn = orch.store.get("github")
        assert not conn.is_connecting
        assert conn.status == ConnectionStatus.DISCONNECTED
        assert orch.notifications == []

    @pytest.mark.asyncio
    async def test_superseded_attempt_is_cancelled(self, github_oauth):
        orch, transport = _build(FakeServices())
        first = asyncio.create_task(orch.connect("github"))
        await _pending(orch)

        second = await orch.begin_connect("github")
        with pytest.raises(AuthCancelledError):
            await first
        assert orch.store.get("github").is_connecting

        await transport.deliver(CallbackPayload(provider=Provider.GITHUB, state=second.state, code="abc"))
        await orch.drain()
        assert orch.store.get("github").is_connected

    @pytest.mark.asyncio
    async def test_unconfigured_oauth(self, monkeypatch):
        monkeypatch.setattr(config, "github_client_id", "")
        orch, _ = _build(FakeServices())
        with pytest.raises(ProviderNotConfiguredError):
            await orch.connect("github")
        assert not orch.store.get("github").is_connecting

    @pytest.mark.asyncio
    async def test_vercel_has_no_oauth(self):
        orch, _ = _build(FakeServices())
        with pytest.raises(ProviderNotConfiguredError):
            await orch.begin_connect("vercel")


class TestResourceExtras:
    @pytest.mark.asyncio
    async def test_select_site_loads_deployments(self):
        services = FakeServices()
        orch, _ = _build(services)
        await orch.connect("netlify", "nf_valid")
        await orch.drain()

        conn = await orch.select_resource("netlify", "site-1")

        assert conn.selected_resource_id == "site-1"
        assert conn.stats.deployments == [{"id": "d1", "state": "ready"}]
        assert conn.stats.resources == [{"id": "site-1", "name": "blog"}]
        assert not conn.is_fetching_deployments

    @pytest.mark.asyncio
    async def test_select_without_deployments_capability(self):
        orch, services, _ = await _connected()
        conn = await orch.select_resource("github", "1")
        assert conn.selected_resource_id == "1"
        assert conn.stats.deployments == []

    @pytest.mark.asyncio
    async def test_update_rate_limit(self):
        orch, _, _ = await _connected()
        snapshot = await orch.update_rate_limit("github")
        assert snapshot.remaining == 4000
        assert orch.store.get("github").rate_limit.remaining == 4000

    @pytest.mark.asyncio
    async def test_language_usage(self):
        pages = [[{"id": 1, "languages_url": "https://api.github.com/repos/octocat/a/languages"}]]
        orch, _, _ = await _connected(FakeServices(repo_pages=pages))
        assert await orch.language_usage("github", top_n=1) == [("Python", 120)]

    @pytest.mark.asyncio
    async def test_disconnected_extras_are_empty(self):
        orch, _ = _build(FakeServices())
        assert await orch.fetch_deployments("netlify", "site-1") == []
        assert await orch.update_rate_limit("github") is None
        assert await orch.language_usage("github") == []
