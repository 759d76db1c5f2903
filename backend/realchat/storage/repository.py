"""Credential Store interface.

Everything above the storage layer talks to this protocol, never to a
database driver. ``DuckDBChatStore`` is the shipped implementation.

Implementations must:
    - raise ``ConflictError`` from ``create_user`` on a duplicate email or
      username;
    - raise ``StorageError`` for any other storage failure;
    - make each call atomic at single-row granularity.
"""
from typing import List, Optional, Protocol

from .models import ChatMessage, PendingRegistration, RefreshTokenRecord, User


class ChatStore(Protocol):
    # Users

    def create_user(self, user: User) -> User: ...

    def find_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_username(self, username: str) -> Optional[User]: ...

    def find_user_by_id(self, user_id: str) -> Optional[User]: ...

    # Refresh tokens

    def store_refresh_token(self, record: RefreshTokenRecord) -> None: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token: str, now: int) -> bool: ...

    def revoke_all_for_user(self, user_id: str, now: int) -> int: ...

    def sweep_expired_refresh_tokens(self, now: int) -> int: ...

    # Pending registrations

    def upsert_pending_registration(self, pending: PendingRegistration) -> None: ...

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]: ...

    def delete_pending_registration(self, email: str) -> None: ...

    def sweep_expired_pending_registrations(self, now: int) -> int: ...

    # Messages

    def append_message(self, message: ChatMessage) -> ChatMessage: ...

    def recent_messages(self, room: str, limit: int, up_to: Optional[int] = None) -> List[ChatMessage]: ...

    def last_message_at(self) -> int: ...

    # Lifecycle

    def close(self) -> None: ...
