"""Messaging service - cosmetic rider-facing text."""

from .confirmation import default_confirmation_message, generate_confirmation_message

__all__ = [
    "default_confirmation_message",
    "generate_confirmation_message",
]
