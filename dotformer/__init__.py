"""Metered, content-addressed image transformation cache with tiered billing."""

__version__ = "1.0.0"
