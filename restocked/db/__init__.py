"""Persistence layer: models and session factory."""
