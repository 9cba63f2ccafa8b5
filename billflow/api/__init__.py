"""HTTP API of the billing engine."""
