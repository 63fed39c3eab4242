"""
ConnectionOrchestrator — drives the per-provider connection lifecycle.

Owns every mutation of the ``CredentialStore``: connecting with a pasted
token or through the OAuth poller, disconnecting, restoring a persisted
token on load, and keeping the resource statistics fresh.  All providers
share this engine; the differences live in the connector descriptors.

Ordering rules:
  • a credential is validated before it is persisted, and persisted
    before the store sees it;
  • on disconnect the backend record is deleted before local state is
    cleared;
  • stats fetched for a credential that was replaced mid-flight are
    dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from config.settings import config
from connectors.backend_sync import BackendSyncClient
from connectors.errors import (
    AuthCancelledError,
    ConnectorError,
    ProviderNotConfiguredError,
    UnauthorizedError,
)
from connectors.provider_client import ProviderApiClient
from connectors.registry import ConnectorRegistry
from core.credential_store import CredentialStore
from core.oauth_poller import OAuthCompletionPoller
from core.single_flight import KeyedLock, SingleFlight
from utils.schemas import (
    Connection,
    Notification,
    PendingAuthorization,
    Provider,
    ProviderStats,
    RateLimitSnapshot,
    disconnected_fields,
    utcnow,
)

logger = logging.getLogger(__name__)

Notifier = Callable[[Notification], Any]


class ConnectionOrchestrator:
    def __init__(
        self,
        store: CredentialStore,
        *,
        api_clients: Dict[Provider, ProviderApiClient],
        backends: Dict[Provider, BackendSyncClient],
        poller: OAuthCompletionPoller,
        session_token: str,
        registry: Optional[ConnectorRegistry] = None,
        notifier: Optional[Notifier] = None,
    ):
        """
        Parameters
        ----------
        store         : the CredentialStore this orchestrator mutates.
        api_clients   : provider → ProviderApiClient.
        backends      : provider → BackendSyncClient.
        poller        : OAuthCompletionPoller for new-tab OAuth flows.
        session_token : application session token sent to the backend.
        registry      : connector descriptors; falls back to the singleton.
        notifier      : called once per user-facing failure.
        """
        self.store = store
        self._api_clients = api_clients
        self._backends = backends
        self._poller = poller
        self._session_token = session_token
        self._registry = registry or ConnectorRegistry()
        self._notifier = notifier

        self._locks = KeyedLock()
        self._refreshes = SingleFlight()
        self._background: Set[asyncio.Task] = set()
        self.notifications: List[Notification] = []

    # ── lookups ─────────────────────────────────────────────────────────

    def _api(self, provider: Provider) -> ProviderApiClient:
        try:
            return self._api_clients[provider]
        except KeyError:
            raise ProviderNotConfiguredError(
                f"No API client for {provider.value}", provider=provider.value
            ) from None

    def _backend(self, provider: Provider) -> BackendSyncClient:
        try:
            return self._backends[provider]
        except KeyError:
            raise ProviderNotConfiguredError(
                f"No backend client for {provider.value}", provider=provider.value
            ) from None

    @property
    def poller(self) -> OAuthCompletionPoller:
        return self._poller

    # ── notifications & background work ─────────────────────────────────

    def _notify(self, provider: Provider, exc: ConnectorError) -> None:
        """Emit one notification per failure, however many callers see it."""
        if exc.notified:
            return
        exc.notified = True
        if isinstance(exc, AuthCancelledError):
            return
        note = Notification(
            provider=provider,
            message=exc.user_message,
            error_code=exc.error_code,
        )
        self.notifications.append(note)
        logger.info("[%s] notify: %s (%s)", provider.value, note.message, exc)
        if self._notifier is not None:
            try:
                self._notifier(note)
            except Exception:
                logger.exception("Notifier failed for %s", provider.value)

    def _spawn(self, coro: Awaitable[Any], label: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if isinstance(exc, ConnectorError):
                logger.info("Background %s ended with %s: %s", label, exc.error_code, exc)
            elif exc is not None:
                logger.error("Background %s crashed", label, exc_info=exc)

        task.add_done_callback(_done)
        return task

    async def drain(self) -> None:
        """Wait until all background work (including work it spawns) is done."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── connect ─────────────────────────────────────────────────────────

    async def connect(self, provider: Provider | str, credential: Optional[str] = None) -> Connection:
        """
        Connect *provider*.

        With a *credential* (pasted token) it is validated directly; without
        one the OAuth new-tab flow runs and this call waits for it.
        """
        provider = Provider(provider)
        self._registry.require(provider)
        if credential is None:
            await self._start_authorization(provider)
            return await self._finish_authorization(provider)

        credential = credential.strip()
        if not credential:
            exc = UnauthorizedError("Empty token", provider=provider.value)
            self._notify(provider, exc)
            raise exc
        return await self._establish(provider, credential)

    async def begin_connect(self, provider: Provider | str) -> PendingAuthorization:
        """Start the OAuth flow and finish it in the background."""
        provider = Provider(provider)
        self._registry.require(provider)
        pending = await self._start_authorization(provider)
        self._spawn(self._finish_authorization(provider), f"oauth[{provider.value}]")
        return pending

    async def cancel_connect(self, provider: Provider | str) -> bool:
        provider = Provider(provider)
        cancelled = await self._poller.cancel(provider)
        if cancelled:
            self.store.patch(provider, {"is_connecting": False})
        return cancelled

    async def _start_authorization(self, provider: Provider) -> PendingAuthorization:
        connector = self._registry.require(provider)
        if not connector.supports_oauth:
            exc = ProviderNotConfiguredError(
                f"{connector.display_name} OAuth is not configured", provider=provider.value
            )
            self._notify(provider, exc)
            raise exc
        self.store.patch(provider, {"is_connecting": True, "last_error": None})
        return await self._poller.start(provider, connector.get_auth_url)

    async def _finish_authorization(self, provider: Provider) -> Connection:
        try:
            payload = await self._poller.wait(provider)
            self._poller.complete(provider)
            if payload.access_token:
                token = payload.access_token
            else:
                token = await self._api(provider).exchange_code(payload.code or "")
        except ConnectorError as exc:
            # a superseding attempt owns the flags
            if not self._poller.has_active_timer(provider):
                changes: Dict[str, Any] = {"is_connecting": False}
                if not isinstance(exc, AuthCancelledError):
                    changes["last_error"] = exc.user_message
                self.store.patch(provider, changes)
            self._notify(provider, exc)
            raise
        return await self._establish(provider, token)

    async def _establish(self, provider: Provider, token: str) -> Connection:
        api = self._api(provider)
        async with self._locks(provider):
            self.store.patch(
                provider, {"is_connecting": True, "is_verifying": True, "last_error": None}
            )
            try:
                principal = await api.validate(token)
                await self._backend(provider).save(self._session_token, token)
            except ConnectorError as exc:
                self.store.patch(provider, {**disconnected_fields(), "last_error": exc.user_message})
                self._notify(provider, exc)
                raise
            except Exception:
                self.store.patch(provider, disconnected_fields())
                raise

            conn = self.store.patch(
                provider,
                {
                    "credential": token,
                    "principal": principal,
                    "validated_at": utcnow(),
                    "stats": None,
                    "rate_limit": api.rate_limit,
                    "selected_resource_id": None,
                    "is_connecting": False,
                    "is_verifying": False,
                    "last_error": None,
                },
            )
        logger.info("[%s] connected as %s", provider.value, principal.username)
        self._spawn(self.refresh_stats(provider, notify=False), f"refresh[{provider.value}]")
        return conn

    # ── disconnect ──────────────────────────────────────────────────────

    async def disconnect(self, provider: Provider | str) -> Connection:
        """Delete the backend record, then clear local state."""
        provider = Provider(provider)
        self._registry.require(provider)
        await self._poller.cancel(provider)
        async with self._locks(provider):
            try:
                await self._backend(provider).delete(self._session_token)
            except ConnectorError as exc:
                self._notify(provider, exc)
                raise
            conn = self.store.patch(provider, {**disconnected_fields(), "last_error": None})
        logger.info("[%s] disconnected", provider.value)
        return conn

    async def _forget_persisted(self, provider: Provider) -> None:
        """Best-effort delete of a backend record the provider no longer accepts."""
        try:
            await self._backend(provider).delete(self._session_token)
        except ConnectorError as exc:
            logger.warning("[%s] backend delete of revoked token failed: %s", provider.value, exc)

    async def _drop_revoked(self, provider: Provider, token: str) -> None:
        """The provider rejected *token*: forget it everywhere, best effort on the backend."""
        async with self._locks(provider):
            if self.store.get(provider).credential != token:
                return
            await self._forget_persisted(provider)
            self.store.patch(
                provider, {**disconnected_fields(), "last_error": UnauthorizedError.user_message}
            )
        logger.info("[%s] token revoked; disconnected", provider.value)

    async def _guarded(self, provider: Provider, token: str, call: Awaitable[Any]) -> Any:
        try:
            return await call
        except UnauthorizedError as exc:
            await self._drop_revoked(provider, token)
            self._notify(provider, exc)
            raise
        except ConnectorError as exc:
            self._notify(provider, exc)
            raise

    # ── stats ───────────────────────────────────────────────────────────

    async def refresh_stats(self, provider: Provider | str, *, notify: bool = True) -> Optional[ProviderStats]:
        """
        Page through every resource and store fresh stats.

        Concurrent calls for the same provider share one refresh.  Returns
        ``None`` when there is nothing to refresh or the credential changed
        while the pages were loading.
        """
        provider = Provider(provider)
        try:
            return await self._refreshes.run(provider, lambda: self._refresh_stats(provider))
        except ConnectorError as exc:
            if notify:
                self._notify(provider, exc)
            raise

    async def _refresh_stats(self, provider: Provider) -> Optional[ProviderStats]:
        conn = self.store.get(provider)
        if not conn.credential:
            return None
        token = conn.credential
        api = self._api(provider)

        self.store.patch(provider, {"is_refreshing": True})
        try:
            items: List[Dict[str, Any]] = []
            cursor: Optional[str] = None
            pages = 0
            while True:
                page = await api.fetch_stats_page(token, cursor)
                items.extend(page.items)
                pages += 1
                if page.next_cursor is None:
                    break
                cursor = page.next_cursor
            summary = await api.summarize(token, conn.principal, items)
        except UnauthorizedError:
            await self._drop_revoked(provider, token)
            raise
        except ConnectorError as exc:
            self.store.patch(provider, {"last_error": exc.user_message})
            raise
        finally:
            if self.store.get(provider).is_refreshing:
                self.store.patch(provider, {"is_refreshing": False})

        current = self.store.get(provider)
        if current.credential != token:
            logger.info("[%s] credential changed during refresh; dropping stats", provider.value)
            return None

        stats = ProviderStats(
            resources=items,
            total=summary.get("total", len(items)),
            summary=summary,
            deployments=current.stats.deployments if current.stats else [],
            last_updated=utcnow(),
        )
        self.store.patch(
            provider,
            {"stats": stats, "rate_limit": api.rate_limit or current.rate_limit, "last_error": None},
        )
        logger.info("[%s] stats refreshed: %d resources in %d page(s)", provider.value, len(items), pages)
        return stats

    async def fetch_deployments(
        self,
        provider: Provider | str,
        resource_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Load deployments of *resource_id* (default: the selected one) into the stats."""
        provider = Provider(provider)
        conn = self.store.get(provider)
        resource_id = resource_id or conn.selected_resource_id
        if not conn.credential or not resource_id:
            return []
        token = conn.credential

        self.store.patch(provider, {"is_fetching_deployments": True})
        try:
            deployments = await self._guarded(
                provider, token, self._api(provider).fetch_deployments(token, resource_id)
            )
        finally:
            if self.store.get(provider).is_fetching_deployments:
                self.store.patch(provider, {"is_fetching_deployments": False})

        current = self.store.get(provider)
        if current.credential != token:
            return []
        stats = current.stats or ProviderStats()
        self.store.patch(provider, {"stats": stats.model_copy(update={"deployments": deployments})})
        return deployments

    async def select_resource(self, provider: Provider | str, resource_id: str) -> Connection:
        provider = Provider(provider)
        connector = self._registry.require(provider)
        conn = self.store.patch(provider, {"selected_resource_id": resource_id})
        if conn.is_connected and connector.deployments_request(resource_id) is not None:
            await self.fetch_deployments(provider, resource_id)
        return self.store.get(provider)

    async def update_rate_limit(self, provider: Provider | str) -> Optional[RateLimitSnapshot]:
        provider = Provider(provider)
        token = self.store.get(provider).credential
        if not token:
            return None
        snapshot = await self._guarded(provider, token, self._api(provider).fetch_rate_limit(token))
        if snapshot is not None and self.store.get(provider).credential == token:
            self.store.patch(provider, {"rate_limit": snapshot})
        return snapshot

    async def language_usage(
        self,
        provider: Provider | str,
        top_n: Optional[int] = None,
    ) -> List[Tuple[str, int]]:
        """Bytes of code per language across the provider's resources, largest first."""
        provider = Provider(provider)
        conn = self.store.get(provider)
        if not conn.credential:
            return []
        stats = conn.trusted_stats
        resources = stats.resources if stats else []
        top_n = top_n if top_n is not None else config.stats_language_top_n
        return await self._guarded(
            provider,
            conn.credential,
            self._api(provider).language_usage(conn.credential, resources, top_n),
        )

    # ── reconcile ───────────────────────────────────────────────────────

    async def _restore(self, provider: Provider) -> bool:
        """Adopt the backend's persisted token if the provider still accepts it."""
        async with self._locks(provider):
            self.store.patch(provider, {"is_verifying": True})
            try:
                record = await self._backend(provider).fetch(self._session_token)
                if record is None:
                    self.store.patch(provider, disconnected_fields())
                    return False
                api = self._api(provider)
                principal = await api.validate(record.access_token)
            except UnauthorizedError:
                await self._forget_persisted(provider)
                self.store.patch(
                    provider, {**disconnected_fields(), "last_error": UnauthorizedError.user_message}
                )
                raise
            except Exception:
                self.store.patch(provider, {"is_verifying": False})
                raise

            current = self.store.get(provider)
            same_token = current.credential == record.access_token
            self.store.patch(
                provider,
                {
                    "credential": record.access_token,
                    "principal": principal,
                    "validated_at": utcnow(),
                    "stats": current.stats if same_token else None,
                    "selected_resource_id": current.selected_resource_id if same_token else None,
                    "rate_limit": api.rate_limit or current.rate_limit,
                    "is_verifying": False,
                    "last_error": None,
                },
            )
        return True

    async def reconcile_on_load(self, provider: Provider | str) -> Connection:
        """
        Restore the persisted connection on app load.

        Missing or rejected tokens end disconnected; transient failures are
        logged and leave the state as it was.  Never notifies.
        """
        provider = Provider(provider)
        try:
            restored = await self._restore(provider)
        except UnauthorizedError:
            logger.info("[%s] persisted token was rejected", provider.value)
            return self.store.get(provider)
        except ConnectorError as exc:
            logger.warning("[%s] reconcile failed: %s", provider.value, exc)
            return self.store.get(provider)

        if restored:
            logger.info("[%s] restored persisted connection", provider.value)
            self._spawn(self.refresh_stats(provider, notify=False), f"refresh[{provider.value}]")
        return self.store.get(provider)

    def start_reconcile(self) -> List[asyncio.Task]:
        """Reconcile every provider in the background; does not block."""
        return [
            self._spawn(self.reconcile_on_load(c.provider), f"reconcile[{c.provider_name}]")
            for c in self._registry.all()
        ]

    async def refresh_all(self, provider: Provider | str) -> bool:
        """
        Re-read the backend record, re-validate it, refresh stats and the
        selected resource's deployments.  Returns whether a connection exists.
        """
        provider = Provider(provider)
        self._registry.require(provider)
        try:
            restored = await self._restore(provider)
        except ConnectorError as exc:
            self._notify(provider, exc)
            raise
        if not restored:
            return False

        await self.refresh_stats(provider)
        if self.store.get(provider).selected_resource_id:
            connector = self._registry.require(provider)
            selected = self.store.get(provider).selected_resource_id
            if connector.deployments_request(selected) is not None:
                await self.fetch_deployments(provider, selected)
        return True

    # ── teardown ────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._poller.cancel_all()
        for api in self._api_clients.values():
            await api.aclose()
        for backend in self._backends.values():
            await backend.aclose()
