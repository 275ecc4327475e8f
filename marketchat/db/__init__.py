"""
Database package: declarative base, engine/session factory and transaction helpers.
"""
from marketchat.db.base import Base

__all__ = ["Base"]
