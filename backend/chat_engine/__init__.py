"""Community chat engine: realtime rooms, presence, typing and moderation."""

__version__ = "0.1.0"
