"""Transcribe voice memos into markdown notes."""

__version__ = "0.1.0"
