"""
Core package for shared utilities.

Configuration, structured logging, the error taxonomy, retry policy and
HTTP helpers used by every service.
"""
