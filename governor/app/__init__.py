"""Application package for the quota governor service."""
