"""
GameZone order orchestrator.

Takes a storefront order from creation through Paystack payment, drop-ship
fulfillment and delivery, backed by a cached multi-source inventory view.
"""

__version__ = "1.0.0"
