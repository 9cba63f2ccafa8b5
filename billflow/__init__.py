"""Billflow: subscription billing lifecycle engine."""
