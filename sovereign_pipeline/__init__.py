"""Sovereign Decision Pipeline — schema-constrained decisions over a national resource ledger."""

__version__ = "3.2.1"
