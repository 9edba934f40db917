"""
Database package initialization.

- base: declarative base and column mixins
- connection: async engine and session management
- models: ORM models for orders and fulfillment attempts
"""
