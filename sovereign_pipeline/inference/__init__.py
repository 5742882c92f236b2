"""Inference gateway, prompt assembly and structured-output recovery."""
