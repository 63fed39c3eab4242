"""
OAuth completion poller

Arms one polling task per provider after the authorize URL is opened in a
new tab.  Every ``interval`` seconds each transport is asked for a captured
callback; the first payload found is checked against the recorded CSRF
nonce before anyone sees it.  The task fails with ``AuthTimeoutError``
when the deadline passes, and with ``AuthCancelledError`` for its waiters
when a newer attempt or ``cancel`` replaces it.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import secrets
import webbrowser
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from config.settings import config
from connectors.errors import (
    AuthCancelledError,
    AuthorizationFailedError,
    AuthTimeoutError,
    CSRFMismatchError,
)
from core.transports import AuthTransport
from utils.schemas import CallbackPayload, PendingAuthorization, PollerState, Provider, utcnow

logger = logging.getLogger(__name__)

UrlBuilder = Callable[[str], str]
Opener = Callable[[str], Any]


def _default_opener() -> Optional[Opener]:
    return webbrowser.open_new_tab if config.oauth_open_browser else None


class OAuthCompletionPoller:
    def __init__(
        self,
        transports: List[AuthTransport],
        *,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
        opener: Optional[Opener] = None,
    ):
        self.transports = transports
        self.interval = interval if interval is not None else config.oauth_poll_interval
        self.timeout = timeout if timeout is not None else config.oauth_poll_timeout
        self._opener = opener if opener is not None else _default_opener()

        self._tasks: Dict[Provider, asyncio.Task] = {}
        self._pending: Dict[Provider, PendingAuthorization] = {}
        self._states: Dict[Provider, PollerState] = {}

    # ── public API ──────────────────────────────────────────────────────

    def state(self, provider: Provider | str) -> PollerState:
        return self._states.get(Provider(provider), PollerState.IDLE)

    def pending(self, provider: Provider | str) -> Optional[PendingAuthorization]:
        return self._pending.get(Provider(provider))

    def has_active_timer(self, provider: Provider | str) -> bool:
        task = self._tasks.get(Provider(provider))
        return task is not None and not task.done()

    async def start(self, provider: Provider | str, build_url: UrlBuilder) -> PendingAuthorization:
        """
        Begin a new authorization attempt for *provider*.

        Any earlier attempt is cancelled and stale payloads are cleared
        before the new nonce is issued.
        """
        provider = Provider(provider)
        await self.cancel(provider)

        nonce = secrets.token_urlsafe(32)
        now = utcnow()
        pending = PendingAuthorization(
            provider=provider,
            state=nonce,
            authorize_url=build_url(nonce),
            created_at=now,
            expires_at=now + timedelta(seconds=self.timeout),
        )
        self._pending[provider] = pending
        self._states[provider] = PollerState.AWAITING_CALLBACK

        task = asyncio.create_task(self._poll(pending), name=f"oauth-poll-{provider.value}")
        task.add_done_callback(lambda t, p=provider: self._on_done(p, t))
        self._tasks[provider] = task
        logger.info("OAuth poll armed for %s (timeout=%.0fs)", provider.value, self.timeout)

        if self._opener is not None:
            try:
                self._opener(pending.authorize_url)
            except Exception as exc:
                logger.warning("Could not open authorize URL for %s: %s", provider.value, exc)
        return pending

    async def wait(self, provider: Provider | str) -> CallbackPayload:
        """Wait for the current attempt to capture a verified payload."""
        provider = Provider(provider)
        task = self._tasks.get(provider)
        if task is None:
            raise AuthCancelledError("No authorization in progress", provider=provider.value)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise AuthCancelledError(
                    "Authorization attempt was cancelled", provider=provider.value
                ) from None
            raise

    async def cancel(self, provider: Provider | str) -> bool:
        """Stop the armed timer for *provider*; returns whether one was running."""
        provider = Provider(provider)
        task = self._tasks.pop(provider, None)
        was_running = task is not None and not task.done()
        if was_running:
            task.cancel()
            logger.info("OAuth poll cancelled for %s", provider.value)
        self._pending.pop(provider, None)
        self._states[provider] = PollerState.IDLE
        await self._clear_transports(provider)
        return was_running

    def complete(self, provider: Provider | str) -> None:
        """The captured payload was consumed; the provider is idle again."""
        provider = Provider(provider)
        if self._states.get(provider) == PollerState.CAPTURED and not self.has_active_timer(provider):
            self._states[provider] = PollerState.IDLE

    async def cancel_all(self) -> None:
        for provider in list(self._tasks):
            await self.cancel(provider)

    # ── internals ───────────────────────────────────────────────────────

    async def _poll(self, pending: PendingAuthorization) -> CallbackPayload:
        provider = pending.provider
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        while True:
            payload = await self._take(provider)
            if payload is not None:
                return await self._verify(pending, payload)
            remaining = deadline - loop.time()
            if remaining <= 0:
                await self._clear_transports(provider)
                raise AuthTimeoutError(
                    f"No OAuth callback for {provider.value} within {self.timeout:.0f}s",
                    provider=provider.value,
                )
            await asyncio.sleep(min(self.interval, remaining))

    async def _take(self, provider: Provider) -> Optional[CallbackPayload]:
        for transport in self.transports:
            payload = await transport.take(provider)
            if payload is not None:
                logger.debug("Callback for %s captured via %s", provider.value, transport.name)
                return payload
        return None

    async def _verify(self, pending: PendingAuthorization, payload: CallbackPayload) -> CallbackPayload:
        provider = pending.provider
        # the other transports may still hold a copy of the same payload
        await self._clear_transports(provider)

        if not payload.state or not hmac.compare_digest(payload.state, pending.state):
            logger.warning("OAuth state mismatch for %s; discarding callback", provider.value)
            raise CSRFMismatchError("OAuth state did not match", provider=provider.value)
        if payload.error:
            raise AuthorizationFailedError(
                payload.error_description or payload.error, provider=provider.value
            )
        if not payload.code and not payload.access_token:
            raise AuthorizationFailedError(
                "Callback carried neither a code nor a token", provider=provider.value
            )
        return payload

    async def _clear_transports(self, provider: Provider) -> None:
        for transport in self.transports:
            await transport.clear(provider)

    def _on_done(self, provider: Provider, task: asyncio.Task) -> None:
        if self._tasks.get(provider) is not task:
            return  # superseded; the newer attempt owns the state
        del self._tasks[provider]
        self._pending.pop(provider, None)
        if task.cancelled():
            self._states[provider] = PollerState.IDLE
            return
        exc = task.exception()
        if exc is None:
            self._states[provider] = PollerState.CAPTURED
        elif isinstance(exc, AuthTimeoutError):
            self._states[provider] = PollerState.TIMED_OUT
            logger.info("OAuth poll timed out for %s", provider.value)
        else:
            self._states[provider] = PollerState.IDLE
