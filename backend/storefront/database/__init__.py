"""
Database package initialization.

- base: declarative base and column mixins
- connection: async engine, session factory and FastAPI session dependency
- models: ORM models for orders, payments, stock records and the ledger
"""

__all__ = []
