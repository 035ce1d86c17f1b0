"""Shared utilities for Atelier."""
