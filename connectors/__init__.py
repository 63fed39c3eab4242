"""
connectors — per-provider descriptors and the clients that use them.

Provides a generic connector framework that handles:
  • Token validation against each provider's profile endpoint
  • Paginated resource listing (repos, sites, projects)
  • OAuth authorize-URL generation and code → token exchange
  • Token persistence on the application backend
  • Fernet encryption of OAuth handoff payloads at rest

Each provider (GitHub, Netlify, Vercel, Supabase, Firebase) is a subclass
of BaseConnector.
"""
