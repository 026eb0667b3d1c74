"""Murya real-time streaming transcription service."""
