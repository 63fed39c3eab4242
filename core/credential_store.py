"""
Credential store

Holds one ``Connection`` per provider.  Passive: no I/O and no business
rules, only merge-patch updates and synchronous subscriber callbacks.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from utils.schemas import Connection, Provider

logger = logging.getLogger(__name__)

Subscriber = Callable[[Provider, Connection], None]


class CredentialStore:
    def __init__(self, providers: Optional[List[Provider]] = None):
        self._connections: Dict[Provider, Connection] = {
            p: Connection(provider=p) for p in (providers or list(Provider))
        }
        self._subscribers: List[Subscriber] = []

    def get(self, provider: Provider | str) -> Connection:
        key = Provider(provider)
        conn = self._connections.get(key)
        if conn is None:
            conn = Connection(provider=key)
            self._connections[key] = conn
        return conn

    def patch(self, provider: Provider | str, changes: Dict[str, Any]) -> Connection:
        """Shallow-merge *changes* into the provider's connection."""
        unknown = set(changes) - set(Connection.model_fields) - {"provider"}
        if unknown:
            raise KeyError(f"Unknown connection fields: {sorted(unknown)}")
        current = self.get(provider)
        updated = current.model_copy(update=changes)
        self._connections[current.provider] = updated
        for callback in list(self._subscribers):
            try:
                callback(current.provider, updated)
            except Exception:
                logger.exception("Credential store subscriber failed for %s", current.provider.value)
        return updated

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def all(self) -> Dict[Provider, Connection]:
        return dict(self._connections)
