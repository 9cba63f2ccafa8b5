"""Core module for shared settings, logging and exceptions."""
