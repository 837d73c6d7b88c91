"""Inspect and switch A/B boot slots kept in GPT partition attributes."""

__version__ = "0.1.0"