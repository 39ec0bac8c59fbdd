"""Periodic jobs: locking, check cycle, email delivery."""
