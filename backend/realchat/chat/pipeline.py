"""Message Pipeline: join, leave, send, typing and read receipts.

Every ordered room event follows the same three steps:

    1. Under the room lock: apply the membership change (if any), take a
       publication ticket and stamp the message timestamp.
    2. Outside the lock: persist the message (``asyncio.to_thread``).
    3. At the ticket's turn: broadcast.

A storage failure in step 2 still passes the ticket's turn (so later events
are not blocked) but nothing is broadcast, and the ``StorageError`` reaches
the caller. Join, leave and send run shielded from the caller's cancellation,
so a client dropping mid-send cannot leave a persisted but unbroadcast
message behind.

Typing indicators and read receipts are ephemeral: not persisted, not
ordered, sent best effort to the other connections in the room.
"""
import asyncio
import logging
from typing import Any, List, Optional

from realchat.errors import StorageError, ValidationError
from realchat.storage.models import ChatMessage
from realchat.storage.repository import ChatStore

from .connection import Connection
from .history import HistoryReplay
from .presence import PresenceTracker, Room

logger = logging.getLogger(__name__)

DEFAULT_ROOM = "general"


def _users_payload(room: Room) -> List[dict]:
    return [identity.model_dump() for identity in room.member_list()]


class MessagePipeline:
    """Orders, persists and fans out room events."""

    def __init__(
        self,
        presence: PresenceTracker,
        store: ChatStore,
        history: HistoryReplay,
        default_room: str = DEFAULT_ROOM,
    ) -> None:
        self._presence = presence
        self._store = store
        self._history = history
        self.default_room = default_room

    def resolve_room(self, room: Any) -> str:
        name = str(room).strip() if room is not None else ""
        return name or self.default_room

    # =========================================================================
    # Membership
    # =========================================================================

    async def join(self, connection: Connection, room: Any = None) -> str:
        """Join ``room`` (leaving any previous room). Returns the room name."""
        return await asyncio.shield(self._join(connection, self.resolve_room(room)))

    async def leave(self, connection: Connection) -> None:
        """Leave the current room; a no-op when not in one."""
        await asyncio.shield(self._leave(connection))

    async def _join(self, connection: Connection, room_name: str) -> str:
        identity = connection.identity
        if connection.room is not None and connection.room != room_name:
            await self._leave(connection)

        async with self._presence.locked(room_name) as room:
            added = room.add(identity, connection.id)
            ticket = room.take_ticket()
            joined_at = room.stamp()
            users = _users_payload(room)
        notice = None
        if added:
            notice = ChatMessage(
                room=room_name,
                text=f"{identity.username} joined",
                system=True,
                createdAt=joined_at,
            )
        connection.room = room_name

        try:
            if notice is not None:
                await self._persist(notice)
        except StorageError:
            async with self._presence.locked(room_name) as room:
                room.remove(identity, connection.id)
            connection.room = None
            await self._skip_turn(room, ticket)
            raise

        async with self._presence.turn(room, ticket):
            history = await asyncio.to_thread(self._history.recent, room_name, None, joined_at)
            await connection.send({
                "type": "room:history",
                "room": room_name,
                "messages": [m.model_dump() for m in history],
            })
            await connection.send({"type": "room:joined", "room": room_name, "users": users})
            # A leave may have been queued behind us (cancelled caller).
            if connection.room == room_name:
                room.subscribe(connection)
            if notice is not None:
                await self._broadcast(room, {"type": "message:new", "message": notice.model_dump()}, exclude=connection)
                await self._broadcast(room, {"type": "room:users", "room": room_name, "users": users}, exclude=connection)

        connection.joined_once = True
        logger.info(
            "[Pipeline] %s joined room %s (%d members)", identity.username, room_name, len(users)
        )
        return room_name

    async def _leave(self, connection: Connection) -> None:
        room_name = connection.room
        if room_name is None:
            return
        identity = connection.identity

        async with self._presence.locked(room_name) as room:
            room.unsubscribe(connection)
            removed = room.remove(identity, connection.id)
            ticket = room.take_ticket()
            left_at = room.stamp()
            users = _users_payload(room)
        connection.room = None

        if not removed:
            await self._skip_turn(room, ticket)
            return

        notice = ChatMessage(
            room=room_name,
            text=f"{identity.username} left",
            system=True,
            createdAt=left_at,
        )
        failure: Optional[StorageError] = None
        try:
            await self._persist(notice)
        except StorageError as e:
            failure = e

        async with self._presence.turn(room, ticket):
            if failure is None:
                await self._broadcast(room, {"type": "message:new", "message": notice.model_dump()})
            # The membership change already happened; publish it either way.
            await self._broadcast(room, {"type": "room:users", "room": room_name, "users": users})

        logger.info("[Pipeline] %s left room %s (%d members)", identity.username, room_name, len(users))
        if failure is not None:
            raise failure

    # =========================================================================
    # Messages
    # =========================================================================

    async def send(self, connection: Connection, text: Any, client_id: Any = None) -> Optional[ChatMessage]:
        """Persist and broadcast a chat message.

        Returns:
            The stored message, or None when ``text`` is blank.

        Raises:
            ValidationError: Not joined to a room, or ``text`` is not a string.
            StorageError: The message could not be persisted; nothing was
                broadcast.
        """
        if text is None:
            return None
        if not isinstance(text, str):
            raise ValidationError("Message text must be a string")
        text = text.strip()
        if not text:
            return None
        if connection.room is None:
            raise ValidationError("Join a room before sending messages")
        return await asyncio.shield(self._send(connection, text, client_id))

    async def _send(self, connection: Connection, text: str, client_id: Any) -> ChatMessage:
        identity = connection.identity
        room_name = connection.room

        async with self._presence.locked(room_name) as room:
            ticket = room.take_ticket()
            message = ChatMessage(
                room=room_name,
                clientId=str(client_id) if client_id else None,
                userId=identity.id,
                username=identity.username,
                text=text,
                createdAt=room.stamp(),
            )

        try:
            await self._persist(message)
        except StorageError:
            await self._skip_turn(room, ticket)
            raise

        async with self._presence.turn(room, ticket):
            await self._broadcast(room, {"type": "message:new", "message": message.model_dump()})
            await connection.send({
                "type": "message:delivered",
                "clientId": message.clientId,
                "messageId": message.id,
            })
        logger.debug("[Pipeline] Message %s from %s in %s", message.id, identity.username, room_name)
        return message

    # =========================================================================
    # Ephemeral events
    # =========================================================================

    async def typing(self, connection: Connection, is_typing: Any) -> None:
        room = self._current_room(connection)
        if room is None:
            return
        await self._broadcast(room, {
            "type": "typing",
            "room": room.name,
            "user": connection.identity.model_dump(),
            "username": connection.identity.username,
            "isTyping": bool(is_typing),
        }, exclude=connection)

    async def read_up_to(self, connection: Connection, message_id: Any) -> None:
        """Tell the others in the room how far this user has read."""
        room = self._current_room(connection)
        if room is None or not message_id:
            return
        await self._broadcast(room, {
            "type": "message:seen",
            "room": room.name,
            "user": connection.identity.model_dump(),
            "readUpTo": str(message_id),
        }, exclude=connection)

    # =========================================================================
    # Internal
    # =========================================================================

    def _current_room(self, connection: Connection) -> Optional[Room]:
        if connection.room is None:
            return None
        return self._presence.get(connection.room)

    async def _persist(self, message: ChatMessage) -> None:
        try:
            await asyncio.to_thread(self._store.append_message, message)
        except StorageError as e:
            logger.error("[Pipeline] Could not persist message in room %s: %s", message.room, e)
            raise

    async def _skip_turn(self, room: Room, ticket: int) -> None:
        async with self._presence.turn(room, ticket):
            pass

    async def _broadcast(self, room: Room, event: dict, exclude: Optional[Connection] = None) -> None:
        """Send ``event`` to the room's connections concurrently.

        A failed send is logged by the connection and does not affect the
        other recipients or the caller.
        """
        targets = [c for c in room.subscribers() if c is not exclude]
        if not targets:
            return
        results = await asyncio.gather(*[c.send(event) for c in targets], return_exceptions=True)
        failed = sum(1 for r in results if r is not True)
        if failed:
            logger.debug("[Pipeline] %s to room %s failed for %d connection(s)", event.get("type"), room.name, failed)
