"""
API package initialization.

HTTP layer over the lifecycle manager and inventory aggregator.
"""
