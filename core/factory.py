"""
Factory — wires a ConnectionOrchestrator with its collaborators.

``OrchestratorHub`` keeps one orchestrator per application session token;
all of them share the callback transports so a callback captured by the
HTTP route reaches whichever session is polling for it.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import httpx

from config.settings import config
from connectors.backend_sync import BackendSyncClient
from connectors.provider_client import ProviderApiClient
from connectors.registry import ConnectorRegistry
from core.callback import CallbackHandler
from core.credential_store import CredentialStore
from core.oauth_poller import OAuthCompletionPoller, Opener
from core.orchestrator import ConnectionOrchestrator, Notifier
from core.transports import AuthTransport, MessageTransport, SideChannelTransport
from database.session import build_engine, build_session_factory, init_models
from database.side_channel import SqlSideChannel

logger = logging.getLogger(__name__)


def build_orchestrator(
    session_token: str,
    *,
    transports: List[AuthTransport],
    registry: Optional[ConnectorRegistry] = None,
    store: Optional[CredentialStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    backend_base_url: Optional[str] = None,
    notifier: Optional[Notifier] = None,
    poll_interval: Optional[float] = None,
    poll_timeout: Optional[float] = None,
    opener: Optional[Opener] = None,
) -> ConnectionOrchestrator:
    """Build an orchestrator with one API client and one backend client per provider."""
    registry = registry or ConnectorRegistry()
    connectors = registry.all()
    store = store or CredentialStore([c.provider for c in connectors])

    api_clients = {
        c.provider: ProviderApiClient(c, http_client=http_client) for c in connectors
    }
    backends = {
        c.provider: BackendSyncClient(c, base_url=backend_base_url, http_client=http_client)
        for c in connectors
    }
    poller = OAuthCompletionPoller(
        transports,
        interval=poll_interval,
        timeout=poll_timeout,
        opener=opener,
    )
    return ConnectionOrchestrator(
        store,
        api_clients=api_clients,
        backends=backends,
        poller=poller,
        session_token=session_token,
        registry=registry,
        notifier=notifier,
    )


class OrchestratorHub:
    def __init__(
        self,
        *,
        transports: Optional[List[AuthTransport]] = None,
        side_channel_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._engine = None
        if transports is None:
            self._engine = build_engine(side_channel_url or config.side_channel_url)
            side_channel = SqlSideChannel(build_session_factory(self._engine))
            transports = [MessageTransport(), SideChannelTransport(side_channel)]
        self.transports = transports
        self.callback = CallbackHandler(transports)
        self._http = http_client
        self._orchestrators: Dict[str, ConnectionOrchestrator] = {}

    async def startup(self) -> None:
        if self._engine is not None:
            await init_models(self._engine)
            logger.info("Side-channel tables ready")

    def get(self, session_token: str) -> ConnectionOrchestrator:
        orch = self._orchestrators.get(session_token)
        if orch is None:
            orch = build_orchestrator(
                session_token,
                transports=self.transports,
                http_client=self._http,
            )
            self._orchestrators[session_token] = orch
            logger.info("Orchestrator created for session …%s", session_token[-4:])
        return orch

    async def aclose(self) -> None:
        for orch in self._orchestrators.values():
            await orch.aclose()
        self._orchestrators.clear()
        if self._engine is not None:
            await self._engine.dispose()
