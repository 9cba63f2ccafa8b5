"""Database module."""
