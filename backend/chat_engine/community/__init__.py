"""Community collaborators consumed by the chat engine.

Provides:
    - CommunityDirectory: chat settings, membership roles and token auth.
"""
from .directory import CommunityDirectory

__all__ = ["CommunityDirectory"]
