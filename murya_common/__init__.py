"""Shared infrastructure for Murya services."""
