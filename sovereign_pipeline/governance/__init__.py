"""Deterministic accounting and phase governance."""
