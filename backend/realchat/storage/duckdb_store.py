"""DuckDB-backed Credential Store.

Persists users, refresh tokens, pending (OTP) registrations and chat
messages in a single embedded DuckDB database. The service follows the
singleton pattern so the whole process shares one connection.

Database Schema:
    users                  - confirmed accounts (email and username unique)
    refresh_tokens         - one row per issued refresh token
    pending_registrations  - one unconfirmed registration per email
    messages               - append-only chat log

    All timestamps are BIGINT epoch milliseconds.

Thread Safety:
    A DuckDB connection must not be used from two threads at once. FastAPI
    runs sync routes in a threadpool and the chat pipeline calls the store
    through ``asyncio.to_thread``, so every call is serialised with a
    ``threading.Lock``.

Usage:
    store = DuckDBChatStore.get_instance("realchat.duckdb")
    store.append_message(message)
    latest = store.recent_messages("general", 50)   # newest first
"""
import logging
import threading
from typing import Any, List, Optional, Sequence

import duckdb

from realchat.errors import ConflictError, StorageError

from .models import ChatMessage, PendingRegistration, RefreshTokenRecord, User

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id            VARCHAR PRIMARY KEY,
        username      VARCHAR NOT NULL UNIQUE,
        email         VARCHAR NOT NULL UNIQUE,
        password_hash VARCHAR NOT NULL,
        created_at    BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        token      VARCHAR PRIMARY KEY,
        user_id    VARCHAR NOT NULL,
        created_at BIGINT NOT NULL,
        expires_at BIGINT NOT NULL,
        revoked_at BIGINT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_refresh_user ON refresh_tokens(user_id)",
    """
    CREATE TABLE IF NOT EXISTS pending_registrations (
        email         VARCHAR PRIMARY KEY,
        code_hash     VARCHAR NOT NULL,
        expires_at    BIGINT NOT NULL,
        username      VARCHAR NOT NULL,
        password_hash VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id         VARCHAR PRIMARY KEY,
        room       VARCHAR NOT NULL,
        client_id  VARCHAR,
        user_id    VARCHAR,
        username   VARCHAR,
        text       VARCHAR NOT NULL,
        system     BOOLEAN NOT NULL DEFAULT FALSE,
        created_at BIGINT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_room_time ON messages(room, created_at)",
)

_USER_COLUMNS = "id, username, email, password_hash, created_at"
_MESSAGE_COLUMNS = "id, room, client_id, user_id, username, text, system, created_at"


class DuckDBChatStore:
    """Singleton ``ChatStore`` implementation on top of DuckDB.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file (``:memory:`` for tests).
    """

    _instance: Optional["DuckDBChatStore"] = None
    _db_path: str = "realchat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open the database and create the schema if it does not exist.

        Args:
            db_path: Path to DuckDB file. Defaults to "realchat.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()
        logger.info("[Store] DuckDB chat store ready (db=%s)", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "DuckDBChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and drop the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        for statement in _SCHEMA:
            self._execute(statement)

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        try:
            with self._lock:
                self._get_connection().execute(sql, list(params))
        except duckdb.Error as e:
            logger.error("[Store] Query failed: %s", e)
            raise StorageError(f"Storage failure: {e}") from e

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[tuple]:
        try:
            with self._lock:
                return self._get_connection().execute(sql, list(params)).fetchone()
        except duckdb.Error as e:
            logger.error("[Store] Query failed: %s", e)
            raise StorageError(f"Storage failure: {e}") from e

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        try:
            with self._lock:
                return self._get_connection().execute(sql, list(params)).fetchall()
        except duckdb.Error as e:
            logger.error("[Store] Query failed: %s", e)
            raise StorageError(f"Storage failure: {e}") from e

    # =========================================================================
    # Users
    # =========================================================================

    def create_user(self, user: User) -> User:
        """Insert a confirmed user.

        Raises:
            ConflictError: If the email or username is already taken.
        """
        try:
            with self._lock:
                self._get_connection().execute(
                    f"INSERT INTO users ({_USER_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
                    [user.id, user.username, user.email, user.passwordHash, user.createdAt],
                )
        except duckdb.ConstraintException as e:
            raise ConflictError("Email or username already registered") from e
        except duckdb.Error as e:
            logger.error("[Store] create_user failed: %s", e)
            raise StorageError(f"Storage failure: {e}") from e
        return user

    def find_user_by_email(self, email: str) -> Optional[User]:
        row = self._fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?",
            [email.strip().lower()],
        )
        return self._row_to_user(row) if row else None

    def find_user_by_username(self, username: str) -> Optional[User]:
        row = self._fetchone(
            f"SELECT {_USER_COLUMNS} FROM users WHERE username = ?",
            [username.strip()],
        )
        return self._row_to_user(row) if row else None

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        row = self._fetchone(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", [user_id])
        return self._row_to_user(row) if row else None

    # =========================================================================
    # Refresh tokens
    # =========================================================================

    def store_refresh_token(self, record: RefreshTokenRecord) -> None:
        self._execute(
            """
            INSERT INTO refresh_tokens (token, user_id, created_at, expires_at, revoked_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [record.token, record.userId, record.createdAt, record.expiresAt, record.revokedAt],
        )

    def get_refresh_token(self, token: str) -> Optional[RefreshTokenRecord]:
        row = self._fetchone(
            """
            SELECT token, user_id, created_at, expires_at, revoked_at
            FROM refresh_tokens
            WHERE token = ?
            """,
            [token],
        )
        if row is None:
            return None
        return RefreshTokenRecord(
            token=row[0], userId=row[1], createdAt=row[2], expiresAt=row[3], revokedAt=row[4]
        )

    def revoke_refresh_token(self, token: str, now: int) -> bool:
        """Revoke one live token. Returns False if it was unknown or already revoked."""
        try:
            with self._lock:
                conn = self._get_connection()
                live = conn.execute(
                    "SELECT count(*) FROM refresh_tokens WHERE token = ? AND revoked_at IS NULL",
                    [token],
                ).fetchone()[0]
                if live:
                    conn.execute(
                        "UPDATE refresh_tokens SET revoked_at = ? WHERE token = ?",
                        [now, token],
                    )
        except duckdb.Error as e:
            logger.error("[Store] revoke_refresh_token failed: %s", e)
            raise StorageError(f"Storage failure: {e}") from e
        return bool(live)

    def revoke_all_for_user(self, user_id: str, now: int) -> int:
        try:
            with self._lock:
                conn = self._get_connection()
                live = conn.execute(
                    "SELECT count(*) FROM refresh_tokens WHERE user_id = ? AND revoked_at IS NULL",
                    [user_id],
                ).fetchone()[0]
                if live:
                    conn.execute(
                        """
                        UPDATE refresh_tokens SET revoked_at = ?
                        WHERE user_id = ? AND revoked_at IS NULL
                        """,
                        [now, user_id],
                    )
        except duckdb.Error as e:
            logger.error("[Store] revoke_all_for_user failed: %s", e)
            raise StorageError(f"Storage failure: {e}") from e
        return int(live)

    def sweep_expired_refresh_tokens(self, now: int) -> int:
        rows = self._fetchall(
            """
            DELETE FROM refresh_tokens
            WHERE expires_at < ? OR revoked_at IS NOT NULL
            RETURNING token
            """,
            [now],
        )
        return len(rows)

    # =========================================================================
    # Pending registrations
    # =========================================================================

    def upsert_pending_registration(self, pending: PendingRegistration) -> None:
        self._execute(
            """
            INSERT INTO pending_registrations (email, code_hash, expires_at, username, password_hash)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (email) DO UPDATE SET
                code_hash = excluded.code_hash,
                expires_at = excluded.expires_at,
                username = excluded.username,
                password_hash = excluded.password_hash
            """,
            [
                pending.email.strip().lower(),
                pending.codeHash,
                pending.expiresAt,
                pending.username.strip(),
                pending.passwordHash,
            ],
        )

    def get_pending_registration(self, email: str) -> Optional[PendingRegistration]:
        row = self._fetchone(
            """
            SELECT email, code_hash, expires_at, username, password_hash
            FROM pending_registrations
            WHERE email = ?
            """,
            [email.strip().lower()],
        )
        if row is None:
            return None
        return PendingRegistration(
            email=row[0], codeHash=row[1], expiresAt=row[2], username=row[3], passwordHash=row[4]
        )

    def delete_pending_registration(self, email: str) -> None:
        self._execute(
            "DELETE FROM pending_registrations WHERE email = ?", [email.strip().lower()]
        )

    def sweep_expired_pending_registrations(self, now: int) -> int:
        rows = self._fetchall(
            "DELETE FROM pending_registrations WHERE expires_at < ? RETURNING email", [now]
        )
        return len(rows)

    # =========================================================================
    # Messages
    # =========================================================================

    def append_message(self, message: ChatMessage) -> ChatMessage:
        self._execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                message.id,
                message.room,
                message.clientId,
                message.userId,
                message.username,
                message.text,
                message.system,
                message.createdAt,
            ],
        )
        return message

    def recent_messages(self, room: str, limit: int, up_to: Optional[int] = None) -> List[ChatMessage]:
        """Return the latest ``limit`` messages of ``room``, newest first.

        Args:
            room: Room name.
            limit: Maximum number of rows.
            up_to: Only messages with ``created_at <= up_to`` (epoch ms).
        """
        cutoff = "AND created_at <= ?" if up_to is not None else ""
        params: List[Any] = [room]
        if up_to is not None:
            params.append(up_to)
        params.append(limit)
        rows = self._fetchall(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages
            WHERE room = ? {cutoff}
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            params,
        )
        return [
            ChatMessage(
                id=row[0],
                room=row[1],
                clientId=row[2],
                userId=row[3],
                username=row[4],
                text=row[5],
                system=bool(row[6]),
                createdAt=row[7],
            )
            for row in rows
        ]

    def last_message_at(self) -> int:
        """Newest ``created_at`` across all rooms, or 0 when there are no messages."""
        row = self._fetchone("SELECT coalesce(max(created_at), 0) FROM messages")
        return int(row[0])

    # =========================================================================
    # Internal
    # =========================================================================

    @staticmethod
    def _row_to_user(row: tuple) -> User:
        return User(
            id=row[0], username=row[1], email=row[2], passwordHash=row[3], createdAt=row[4]
        )

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
