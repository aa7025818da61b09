"""
connectors — Google Calendar connection lifecycle.

Provides:
  • OAuth2 auth-URL generation and callback handling
  • Connection persistence (one row per member and provider)
  • Token refresh with write-back before use
  • Fernet encryption of tokens at rest
  • Revocation / disconnect
"""
