"""Atelier - asynchronous batch image generation engine."""

__version__ = "0.4.0"
