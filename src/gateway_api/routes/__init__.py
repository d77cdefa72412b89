"""API route modules."""

from . import audio, health, llm, media, messages, phone

__all__ = ["audio", "health", "llm", "media", "messages", "phone"]
