"""Durable storage for booking sessions and their transition log."""

from .session_store import SessionStore

__all__ = ["SessionStore"]
