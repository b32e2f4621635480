"""Filesystem layout, file identity and deduplication helpers."""
