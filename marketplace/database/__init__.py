"""
Database package: declarative base, async engine/session and ORM models.

Import submodules explicitly when needed to avoid circular imports.
"""

__all__: list[str] = []
