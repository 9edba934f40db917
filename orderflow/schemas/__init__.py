"""Pydantic models for orders, payments and inventory."""
