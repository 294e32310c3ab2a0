"""Marketplace OAuth clients."""
