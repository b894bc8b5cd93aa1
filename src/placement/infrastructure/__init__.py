"""Persistence and monitoring adapters."""
