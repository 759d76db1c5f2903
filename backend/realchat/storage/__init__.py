"""Credential Store: users, refresh tokens, pending registrations, messages."""
from .duckdb_store import DuckDBChatStore
from .models import ChatMessage, PendingRegistration, RefreshTokenRecord, User, now_ms
from .repository import ChatStore

__all__ = [
    "ChatMessage",
    "ChatStore",
    "DuckDBChatStore",
    "PendingRegistration",
    "RefreshTokenRecord",
    "User",
    "now_ms",
]
