"""Marketplace credential and request-signing core."""

__version__ = "0.1.0"
