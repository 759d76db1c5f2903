"""Room Presence Tracker.

Process-wide, in-memory registry ``room name -> Room``. A room is created the
first time anyone joins it and dropped again as soon as it has no members, no
subscribed connections and no event waiting to be published. Nothing here is
persisted; presence is rebuilt as clients reconnect.

Each ``Room`` has its own ``asyncio.Lock`` (there is no global lock). The lock
guards membership and the publication ticket counter, and is never held
across I/O. Message timestamps come from one ``MessageClock`` owned by the
tracker, so they keep increasing when a room is dropped and created again.

Events that must reach clients in order take a ticket under the lock and
publish inside ``PresenceTracker.turn``, which runs strictly in ticket
order, so:

    * broadcasts leave in the order the lock accepted them, and
    * a membership change is never published before it is applied.

Identities are reference counted per connection: one user signed in on two
devices is one member, and leaves the member list only when the last of their
connections leaves.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Set

from realchat.auth.schemas import Identity
from realchat.storage.models import now_ms

from .connection import Connection

logger = logging.getLogger(__name__)


class MessageClock:
    """Strictly increasing epoch-ms timestamps, shared by every room.

    Seeded with the newest stored timestamp at startup so a restarted
    process never stamps a message earlier than one already persisted.
    """

    def __init__(self, last: int = 0) -> None:
        self.last = last

    def stamp(self) -> int:
        self.last = max(now_ms(), self.last + 1)
        return self.last


class Room:
    """State of one room. Mutators must be called with ``lock`` held."""

    def __init__(self, name: str, clock: Optional[MessageClock] = None) -> None:
        self.name = name
        self.clock = clock or MessageClock()
        self.lock = asyncio.Lock()
        self._members: Dict[str, Identity] = {}
        self._refs: Dict[str, Set[str]] = {}
        self._subscribers: Dict[str, Connection] = {}

        self._next_ticket = 0
        self._serving = 0
        self._abandoned: Set[int] = set()
        self._turn = asyncio.Condition()

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add(self, identity: Identity, connection_id: str) -> bool:
        """Add one reference; True when the identity was not a member before."""
        refs = self._refs.setdefault(identity.id, set())
        is_new = not refs
        refs.add(connection_id)
        if is_new:
            self._members[identity.id] = identity
        return is_new

    def remove(self, identity: Identity, connection_id: Optional[str] = None) -> bool:
        """Drop one reference (all of them when ``connection_id`` is None).

        Returns True when the identity is no longer a member.
        """
        refs = self._refs.get(identity.id)
        if not refs:
            return False
        if connection_id is None:
            refs.clear()
        else:
            refs.discard(connection_id)
        if refs:
            return False
        del self._refs[identity.id]
        del self._members[identity.id]
        return True

    def member_list(self) -> List[Identity]:
        return list(self._members.values())

    def has_member(self, identity_id: str) -> bool:
        return identity_id in self._members

    # ------------------------------------------------------------------
    # Subscribers (connections that receive room events)
    # ------------------------------------------------------------------

    def subscribe(self, connection: Connection) -> None:
        self._subscribers[connection.id] = connection

    def unsubscribe(self, connection: Connection) -> None:
        self._subscribers.pop(connection.id, None)

    def subscribers(self) -> List[Connection]:
        return list(self._subscribers.values())

    # ------------------------------------------------------------------
    # Sequencing
    # ------------------------------------------------------------------

    def stamp(self) -> int:
        """Next message timestamp: wall clock, but strictly increasing."""
        return self.clock.stamp()

    def take_ticket(self) -> int:
        ticket = self._next_ticket
        self._next_ticket += 1
        return ticket

    @asynccontextmanager
    async def turn(self, ticket: int) -> AsyncIterator[None]:
        """Wait until every earlier ticket has published, then hold the turn."""
        async with self._turn:
            try:
                await self._turn.wait_for(lambda: self._serving == ticket)
            except asyncio.CancelledError:
                if self._serving == ticket:
                    self._advance()
                else:
                    self._abandoned.add(ticket)
                raise
        try:
            yield
        finally:
            async with self._turn:
                self._advance()

    def _advance(self) -> None:
        self._serving += 1
        while self._serving in self._abandoned:
            self._abandoned.discard(self._serving)
            self._serving += 1
        self._turn.notify_all()

    def is_idle(self) -> bool:
        return (
            not self._members
            and not self._subscribers
            and self._serving == self._next_ticket
            and not self.lock.locked()
        )


class PresenceTracker:
    """Registry of rooms with create-on-first-join and delete-on-empty."""

    def __init__(self, clock: Optional[MessageClock] = None) -> None:
        self._rooms: Dict[str, Room] = {}
        self.clock = clock or MessageClock()

    @asynccontextmanager
    async def locked(self, name: str) -> AsyncIterator[Room]:
        """Hold the lock of room ``name``, creating the room if needed."""
        while True:
            room = self._rooms.get(name)
            if room is None:
                room = Room(name, self.clock)
                self._rooms[name] = room
            await room.lock.acquire()
            # Evicted while we waited: start over with the live entry.
            if self._rooms.get(name) is room:
                break
            room.lock.release()
        try:
            yield room
        finally:
            room.lock.release()
            self.discard_if_idle(room)

    @asynccontextmanager
    async def turn(self, room: Room, ticket: int) -> AsyncIterator[None]:
        """Publish slot for ``ticket`` (see ``Room.turn``)."""
        try:
            async with room.turn(ticket):
                yield
        finally:
            self.discard_if_idle(room)

    def discard_if_idle(self, room: Room) -> None:
        if room.is_idle() and self._rooms.get(room.name) is room:
            del self._rooms[room.name]
            logger.debug("[Presence] Room %s is empty, removed", room.name)

    # ------------------------------------------------------------------
    # Membership API
    # ------------------------------------------------------------------

    async def join(self, room: str, identity: Identity, connection_id: Optional[str] = None) -> List[Identity]:
        """Add ``identity`` to ``room``; joining twice changes nothing.

        Returns:
            The full member list after the join.
        """
        async with self.locked(room) as entry:
            entry.add(identity, connection_id or identity.id)
            return entry.member_list()

    async def leave(self, room: str, identity: Identity, connection_id: Optional[str] = None) -> List[Identity]:
        """Remove ``identity`` (or one of its connections) from ``room``."""
        if room not in self._rooms:
            return []
        async with self.locked(room) as entry:
            entry.remove(identity, connection_id)
            return entry.member_list()

    def members(self, room: str) -> List[Identity]:
        entry = self._rooms.get(room)
        return entry.member_list() if entry else []

    def get(self, room: str) -> Optional[Room]:
        return self._rooms.get(room)

    def rooms(self) -> List[str]:
        return list(self._rooms)
