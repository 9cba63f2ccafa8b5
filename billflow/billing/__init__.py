"""Billing lifecycle engine."""
