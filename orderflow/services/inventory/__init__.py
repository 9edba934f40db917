"""Inventory catalog, source adapters, snapshot storage and the aggregator."""
