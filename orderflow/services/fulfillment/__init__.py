"""Drop-ship fulfillment partner adapter."""
