"""
Callback handler — turns the provider's redirect into a ``CallbackPayload``
and hands it to every transport.
"""

from __future__ import annotations

import logging
from typing import List, Mapping, Optional

from core.transports import AuthTransport
from utils.schemas import CallbackPayload, Provider

logger = logging.getLogger(__name__)


class CallbackHandler:
    def __init__(self, transports: List[AuthTransport]):
        self._transports = transports

    async def handle(self, provider: Provider | str, params: Mapping[str, Optional[str]]) -> CallbackPayload:
        payload = CallbackPayload(
            provider=Provider(provider),
            state=params.get("state"),
            code=params.get("code"),
            access_token=params.get("access_token"),
            error=params.get("error"),
            error_description=params.get("error_description"),
        )
        for transport in self._transports:
            await transport.deliver(payload)
        logger.info(
            "OAuth callback captured for %s (code=%s token=%s error=%s)",
            payload.provider.value,
            bool(payload.code),
            bool(payload.access_token),
            payload.error,
        )
        return payload
