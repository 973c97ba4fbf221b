"""Tiered usage quotas and rate limits for metered actions."""

__version__ = "0.1.0"
