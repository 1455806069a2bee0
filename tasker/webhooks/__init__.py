"""Inbound webhook and event triggers."""
