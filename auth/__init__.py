"""
auth — Session authentication.

Provides:
  • Signed session token creation & verification
  • ``get_optional_user_id`` FastAPI dependency
"""
