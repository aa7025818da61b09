"""Domain services: reconciliation, membership checks and admin operations."""
