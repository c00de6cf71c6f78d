"""Adaptive stealth collection engine."""

__version__ = "1.0.0"
