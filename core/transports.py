"""
Auth transports — how a captured OAuth callback reaches the waiting poller.

``MessageTransport`` is the in-process path: the callback route hands the
payload straight to the opener (the equivalent of ``window.postMessage``).
``SideChannelTransport`` is the durable path: the payload is written to a
shared table and polled, which survives the callback landing in another
worker or a page reload.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from pydantic import ValidationError

from connectors.encryption import TokenCipher
from database.side_channel import SqlSideChannel
from utils.schemas import CallbackPayload, Provider

logger = logging.getLogger(__name__)


class AuthTransport(ABC):
    name: str = "transport"

    @abstractmethod
    async def deliver(self, payload: CallbackPayload) -> None:
        ...

    @abstractmethod
    async def take(self, provider: Provider) -> Optional[CallbackPayload]:
        """Consume the pending payload for *provider*, if any."""
        ...

    @abstractmethod
    async def clear(self, provider: Provider) -> None:
        ...


class MessageTransport(AuthTransport):
    name = "message"

    def __init__(self) -> None:
        self._inbox: Dict[Provider, CallbackPayload] = {}

    async def deliver(self, payload: CallbackPayload) -> None:
        self._inbox[payload.provider] = payload

    async def take(self, provider: Provider) -> Optional[CallbackPayload]:
        return self._inbox.pop(Provider(provider), None)

    async def clear(self, provider: Provider) -> None:
        self._inbox.pop(Provider(provider), None)


class SideChannelTransport(AuthTransport):
    name = "side_channel"

    def __init__(self, store: SqlSideChannel, cipher: Optional[TokenCipher] = None):
        self._store = store
        self._cipher = cipher or TokenCipher()

    async def deliver(self, payload: CallbackPayload) -> None:
        blob = self._cipher.encrypt(payload.model_dump_json())
        await self._store.put(payload.provider.value, blob)

    async def take(self, provider: Provider) -> Optional[CallbackPayload]:
        blob = await self._store.take(Provider(provider).value)
        if blob is None:
            return None
        try:
            return CallbackPayload.model_validate_json(self._cipher.decrypt(blob))
        except ValidationError:
            logger.warning("Discarding unreadable side-channel payload for %s", provider)
            return None

    async def clear(self, provider: Provider) -> None:
        await self._store.clear(Provider(provider).value)
