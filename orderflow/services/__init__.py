"""
Services package initialization.

Each subpackage owns one collaborator of the order lifecycle: orders,
payments, fulfillment and inventory.
"""
