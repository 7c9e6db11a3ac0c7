"""Resilient data access for rate-limited HTTP APIs."""

__version__ = "0.1.0"
