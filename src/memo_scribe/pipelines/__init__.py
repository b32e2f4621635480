"""Conversion, transcription and note composition stages plus the scheduler that drives them."""
