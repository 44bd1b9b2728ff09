"""Garbage Free City: waste report marketplace core."""

__version__ = "0.1.0"
