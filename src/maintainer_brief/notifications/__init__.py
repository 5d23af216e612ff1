"""Notification channels used after a successful analysis."""
