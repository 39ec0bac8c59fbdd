"""Restocked: price and stock monitoring pipeline."""

__version__ = "0.1.0"
