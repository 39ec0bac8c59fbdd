"""Notification creation and email delivery adapters."""
