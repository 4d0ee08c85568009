"""Quota governor for rate-limited generative-AI backends."""

__version__ = "0.1.0"
