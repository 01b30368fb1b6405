"""
connectors — OAuth linking of external financial accounts.

Provides a generic connector framework that handles:
  • OAuth2 auth-URL generation with PKCE and single-use state
  • Callback handling (code → token exchange → account lookup)
  • AES-256-GCM encryption of tokens at rest
  • Manual and scheduled token refresh
  • Revocation / disconnect

Each provider (Coinbase, Schwab, …) is a subclass of BaseConnector.
"""
