"""
Pydantic schemas for the connection manager.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Provider(str, Enum):
    GITHUB = "github"
    NETLIFY = "netlify"
    VERCEL = "vercel"
    SUPABASE = "supabase"
    FIREBASE = "firebase"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    VERIFYING = "verifying"
    REFRESHING = "refreshing"
    CONNECTED = "connected"


class PollerState(str, Enum):
    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    CAPTURED = "captured"
    TIMED_OUT = "timed_out"


# ═══════════════════════════════════════════════════════════════════════════════
# Provider data
# ═══════════════════════════════════════════════════════════════════════════════


class Principal(BaseModel):
    """Identity the provider reports for a validated credential."""

    username: str
    email: Optional[str] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    account_id: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class RateLimitSnapshot(BaseModel):
    limit: int
    remaining: int
    reset_at: Optional[datetime] = None


class ResourcePage(BaseModel):
    """One page of repos / sites / projects plus the continuation cursor."""

    items: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None


class ProviderStats(BaseModel):
    resources: List[Dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    summary: Dict[str, Any] = Field(default_factory=dict)
    deployments: List[Dict[str, Any]] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utcnow)


# ═══════════════════════════════════════════════════════════════════════════════
# Connection state
# ═══════════════════════════════════════════════════════════════════════════════


class Connection(BaseModel):
    """
    Per-provider connection state held by the CredentialStore.

    ``status`` is derived from the stored fields and never set directly.
    """

    provider: Provider
    credential: Optional[str] = None
    principal: Optional[Principal] = None
    stats: Optional[ProviderStats] = None
    validated_at: Optional[datetime] = None
    rate_limit: Optional[RateLimitSnapshot] = None
    selected_resource_id: Optional[str] = None

    is_connecting: bool = False
    is_verifying: bool = False
    is_refreshing: bool = False
    is_fetching_deployments: bool = False
    last_error: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return bool(self.credential) and self.principal is not None

    @property
    def status(self) -> ConnectionStatus:
        if self.is_connecting:
            return ConnectionStatus.CONNECTING
        if self.is_verifying:
            return ConnectionStatus.VERIFYING
        if not self.credential:
            return ConnectionStatus.DISCONNECTED
        if self.is_refreshing:
            return ConnectionStatus.REFRESHING
        if self.principal is not None:
            return ConnectionStatus.CONNECTED
        return ConnectionStatus.VERIFYING

    @property
    def trusted_stats(self) -> Optional[ProviderStats]:
        """Stats only count if they were fetched after the last validation."""
        if self.stats is None or self.validated_at is None:
            return None
        if self.stats.last_updated < self.validated_at:
            return None
        return self.stats

    def public_view(self) -> Dict[str, Any]:
        """Serialisable view for the UI (no credential exposed)."""
        data = self.model_dump(mode="json", exclude={"credential", "stats"})
        trusted = self.trusted_stats
        data["stats"] = trusted.model_dump(mode="json") if trusted is not None else None
        data["status"] = self.status.value
        data["is_connected"] = self.is_connected
        return data


def disconnected_fields() -> Dict[str, Any]:
    """Patch that returns a Connection to the disconnected resting state."""
    return {
        "credential": None,
        "principal": None,
        "stats": None,
        "validated_at": None,
        "rate_limit": None,
        "selected_resource_id": None,
        "is_connecting": False,
        "is_verifying": False,
        "is_refreshing": False,
        "is_fetching_deployments": False,
    }


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth handoff
# ═══════════════════════════════════════════════════════════════════════════════


class PendingAuthorization(BaseModel):
    provider: Provider
    state: str
    authorize_url: str
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class CallbackPayload(BaseModel):
    """What the callback context hands back to the waiting opener."""

    provider: Provider
    state: Optional[str] = None
    code: Optional[str] = None
    access_token: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)


class BackendRecord(BaseModel):
    """Provider record persisted by the application backend."""

    access_token: str
    refresh_token: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class Notification(BaseModel):
    provider: Provider
    level: str = "error"  # "error" | "info"
    message: str
    error_code: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ConnectRequest(BaseModel):
    token: Optional[str] = None


class SelectResourceRequest(BaseModel):
    resource_id: str
