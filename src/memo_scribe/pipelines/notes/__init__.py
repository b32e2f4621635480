"""Markdown note composition."""

from __future__ import annotations

from .composer import MarkdownNote, NoteComposer, render_transcript_body, start_case

__all__ = ["MarkdownNote", "NoteComposer", "render_transcript_body", "start_case"]
