"""
auth — Session authentication for the connector routes.

Provides:
  • ``get_session_token`` bearer-token FastAPI dependency
  • ``get_orchestrator`` lookup of the session's orchestrator
"""
