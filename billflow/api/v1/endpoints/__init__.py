"""Endpoint modules of the billing API."""
