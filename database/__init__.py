"""Persistence: ORM models and the async session factory."""
