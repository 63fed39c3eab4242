"""
ConnectorRegistry — discovers and provides access to all provider descriptors.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from connectors.base import BaseConnector
from connectors.errors import ProviderNotConfiguredError
from connectors.firebase import FirebaseConnector
from connectors.github import GitHubConnector
from connectors.netlify import NetlifyConnector
from connectors.supabase import SupabaseConnector
from connectors.vercel import VercelConnector
from utils.schemas import Provider

logger = logging.getLogger(__name__)

# ── All known connectors — add new ones here ─────────────────────────────

_ALL_CONNECTORS: List[BaseConnector] = [
    GitHubConnector(),
    NetlifyConnector(),
    VercelConnector(),
    SupabaseConnector(),
    FirebaseConnector(),
]


class ConnectorRegistry:
    """Singleton registry for all provider descriptors."""

    _instance: Optional["ConnectorRegistry"] = None

    def __new__(cls) -> "ConnectorRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._connectors = {}
            cls._instance._discovered = False
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None

    def discover(self) -> None:
        """Register every connector; OAuth availability is logged, not required."""
        if self._discovered:
            return
        for conn in _ALL_CONNECTORS:
            self._connectors[conn.provider] = conn
            if conn.supports_oauth:
                logger.info("Connector registered: %s (token + OAuth)", conn.display_name)
            else:
                logger.info("Connector registered: %s (token only)", conn.display_name)
        self._discovered = True

    def get(self, provider: Provider | str) -> Optional[BaseConnector]:
        self.discover()
        try:
            return self._connectors.get(Provider(provider))
        except ValueError:
            return None

    def require(self, provider: Provider | str) -> BaseConnector:
        connector = self.get(provider)
        if connector is None:
            raise ProviderNotConfiguredError(f"Unknown provider '{provider}'", provider=str(provider))
        return connector

    def all(self) -> List[BaseConnector]:
        self.discover()
        return list(self._connectors.values())

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all available connectors."""
        return [
            {
                "provider": c.provider_name,
                "display_name": c.display_name,
                "icon": c.icon,
                "oauth": c.supports_oauth,
            }
            for c in self.all()
        ]
