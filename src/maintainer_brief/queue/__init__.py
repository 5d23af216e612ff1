"""Durable SQLite-backed work queue and its worker runtime."""
