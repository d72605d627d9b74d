"""Retail point-of-sale and inventory admin backend."""

__version__ = "1.0.0"
