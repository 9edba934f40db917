"""
Cache package initialization.

Redis connection management used to persist the inventory snapshot.
"""
