"""Shared helpers: retry policy, adaptive batching, clock."""
