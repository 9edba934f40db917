"""Paystack payment gateway adapter."""
