"""
Application settings loaded from environment variables.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Application backend (token persistence) ──────────────────────────
    app_api_base_url: str = "http://localhost:8000"
    app_session_token: str = ""        # session token used for startup reconciliation

    # ── OAuth Connectors ─────────────────────────────────────────────────
    oauth_redirect_base: str = "http://localhost:8000"  # base URL for OAuth callbacks
    github_client_id: str = ""
    github_client_secret: str = ""
    netlify_client_id: str = ""
    netlify_client_secret: str = ""     # only needed for the code flow
    supabase_client_id: str = ""
    supabase_client_secret: str = ""
    firebase_client_id: str = ""        # Google OAuth Web App client ID
    firebase_client_secret: str = ""

    # ── OAuth completion polling ─────────────────────────────────────────
    oauth_poll_interval: float = 2.0    # seconds between side-channel reads
    oauth_poll_timeout: float = 300.0   # hard window for one authorization
    oauth_open_browser: bool = False    # open the authorize URL locally

    # ── Side-channel / security ──────────────────────────────────────────
    side_channel_url: str = "sqlite+aiosqlite:///./auth_handoff.db"
    token_encryption_key: str = ""      # Fernet key for handoff payloads at rest

    # ── Provider APIs ────────────────────────────────────────────────────
    http_timeout: float = 30.0
    stats_language_top_n: int = 5
    github_events_limit: int = 5

    # ── Server ───────────────────────────────────────────────────────────
    port: int = 8000
    host: str = "127.0.0.1"
    debug: bool = False
    cors_origins: list = ["*"]

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }

    def redirect_uri(self, provider: str) -> str:
        """Application-owned callback path for *provider*."""
        return f"{self.oauth_redirect_base}/api/v1/connectors/{provider}/callback"


config = Settings()
