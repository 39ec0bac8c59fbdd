"""Extractor adapters."""
