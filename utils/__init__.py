"""Shared error taxonomy and pydantic schemas."""
