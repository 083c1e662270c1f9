"""
Declarative base shared by every storefront table.

Kept apart from ``database`` so models, Alembic and the tests can import it
without building an engine from the environment.
"""
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase


class Base(AsyncAttrs, DeclarativeBase):
    def __repr__(self) -> str:
        identity = inspect(self).identity
        key = identity[0] if identity else "transient"
        return f"<{type(self).__name__} {key}>"
