"""Unit tests for the message pipeline (no network, recorded sockets)."""
import asyncio
import time
from typing import List
from unittest.mock import patch

import pytest

from realchat.auth.schemas import Identity
from realchat.chat.connection import Connection
from realchat.chat.history import HistoryReplay
from realchat.chat.pipeline import MessagePipeline
from realchat.chat.presence import MessageClock, PresenceTracker
from realchat.errors import StorageError, ValidationError
from realchat.storage.models import ChatMessage, now_ms


class RecordingWebSocket:
    """Stands in for a Starlette WebSocket; keeps every sent event."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[dict] = []
        self.fail = fail

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def types(self) -> List[str]:
        return [event["type"] for event in self.sent]

    def of_type(self, event_type: str) -> List[dict]:
        return [event for event in self.sent if event["type"] == event_type]


def connect(username: str, fail: bool = False) -> Connection:
    return Connection(RecordingWebSocket(fail=fail), Identity(id=f"u-{username}", username=username))


@pytest.fixture
def presence():
    return PresenceTracker()


@pytest.fixture
def pipeline(presence, store):
    return MessagePipeline(presence, store, HistoryReplay(store))


class TestJoin:
    @pytest.mark.asyncio
    async def test_joiner_gets_history_then_joined(self, pipeline, store):
        alice = connect("alice")
        await pipeline.join(alice, "general")

        assert alice.websocket.types() == ["room:history", "room:joined"]
        history = alice.websocket.sent[0]["messages"]
        assert [m["text"] for m in history] == ["alice joined"]
        assert alice.websocket.sent[1]["users"] == [{"id": "u-alice", "username": "alice"}]
        assert alice.room == "general"
        assert [m.text for m in store.recent_messages("general", 10)] == ["alice joined"]

    @pytest.mark.asyncio
    async def test_others_see_join_notice_and_users(self, pipeline):
        alice, bob = connect("alice"), connect("bob")
        await pipeline.join(alice, "general")
        await pipeline.join(bob, "general")

        assert alice.websocket.types()[2:] == ["message:new", "room:users"]
        assert alice.websocket.sent[2]["message"]["text"] == "bob joined"
        assert alice.websocket.sent[2]["message"]["system"] is True
        assert {u["username"] for u in alice.websocket.sent[3]["users"]} == {"alice", "bob"}
        # The joiner sees its own notice in history, not as a live event.
        assert "message:new" not in bob.websocket.types()

    @pytest.mark.asyncio
    async def test_blank_room_means_default(self, pipeline):
        alice = connect("alice")
        assert await pipeline.join(alice, "   ") == "general"

    @pytest.mark.asyncio
    async def test_join_switches_rooms(self, pipeline, presence):
        alice, bob = connect("alice"), connect("bob")
        await pipeline.join(alice, "general")
        await pipeline.join(bob, "general")
        await pipeline.join(bob, "random")

        assert presence.members("general") == [alice.identity]
        assert presence.members("random") == [bob.identity]
        left = alice.websocket.of_type("message:new")[-1]["message"]
        assert left["text"] == "bob left"

    @pytest.mark.asyncio
    async def test_second_device_does_not_announce(self, pipeline, store):
        phone, laptop = connect("alice"), connect("alice")
        await pipeline.join(phone, "general")
        await pipeline.join(laptop, "general")
        assert [m.text for m in store.recent_messages("general", 10)] == ["alice joined"]
        assert phone.websocket.types() == ["room:history", "room:joined"]

        await pipeline.leave(laptop)
        assert [m.text for m in store.recent_messages("general", 10)] == ["alice joined"]


class TestLeave:
    @pytest.mark.asyncio
    async def test_leave_announces_and_evicts_room(self, pipeline, presence):
        alice, bob = connect("alice"), connect("bob")
        await pipeline.join(alice, "general")
        await pipeline.join(bob, "general")
        await pipeline.leave(bob)

        assert alice.websocket.types()[-2:] == ["message:new", "room:users"]
        assert alice.websocket.sent[-1]["users"] == [{"id": "u-alice", "username": "alice"}]
        assert bob.room is None

        await pipeline.leave(alice)
        assert presence.rooms() == []

    @pytest.mark.asyncio
    async def test_leave_without_room_is_noop(self, pipeline):
        alice = connect("alice")
        await pipeline.leave(alice)
        assert alice.websocket.sent == []


class TestSend:
    @pytest.mark.asyncio
    async def test_broadcast_and_ack_to_sender_only(self, pipeline):
        alice, bob = connect("alice"), connect("bob")
        await pipeline.join(alice, "general")
        await pipeline.join(bob, "general")

        message = await pipeline.send(bob, "  hello  ", "c-1")
        assert message.text == "hello"

        assert bob.websocket.types()[-2:] == ["message:new", "message:delivered"]
        assert bob.websocket.sent[-1] == {"type": "message:delivered", "clientId": "c-1", "messageId": message.id}
        assert alice.websocket.sent[-1]["type"] == "message:new"
        assert alice.websocket.sent[-1]["message"]["id"] == message.id
        assert alice.websocket.of_type("message:delivered") == []

    @pytest.mark.asyncio
    async def test_blank_text_is_noop(self, pipeline, store):
        alice = connect("alice")
        await pipeline.join(alice, "general")
        before = list(alice.websocket.sent)
        assert await pipeline.send(alice, "   ") is None
        assert await pipeline.send(alice, None) is None
        assert alice.websocket.sent == before
        assert len(store.recent_messages("general", 10)) == 1

    @pytest.mark.asyncio
    async def test_send_before_join(self, pipeline):
        with pytest.raises(ValidationError):
            await pipeline.send(connect("alice"), "hello")

    @pytest.mark.asyncio
    async def test_concurrent_sends_arrive_in_timestamp_order(self, pipeline):
        alice, bob = connect("alice"), connect("bob")
        await pipeline.join(alice, "general")
        await pipeline.join(bob, "general")

        await asyncio.gather(*[pipeline.send(bob, f"m{i}") for i in range(20)])
        received = [e["message"] for e in alice.websocket.of_type("message:new")][1:]
        assert len(received) == 20
        stamps = [m["createdAt"] for m in received]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 20

    @pytest.mark.asyncio
    async def test_storage_failure_broadcasts_nothing(self, pipeline, store):
        alice, bob = connect("alice"), connect("bob")
        await pipeline.join(alice, "general")
        await pipeline.join(bob, "general")
        before = len(alice.websocket.sent)

        with patch.object(store, "append_message", side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                await pipeline.send(bob, "lost")
        assert len(alice.websocket.sent) == before

        # The skipped turn does not block later messages.
        message = await pipeline.send(bob, "kept")
        assert alice.websocket.sent[-1]["message"]["id"] == message.id

    @pytest.mark.asyncio
    async def test_dead_connection_does_not_break_fanout(self, pipeline):
        alice, bob, carol = connect("alice"), connect("bob"), connect("carol")
        for conn in (alice, bob, carol):
            await pipeline.join(conn, "general")
        bob.websocket.fail = True

        message = await pipeline.send(carol, "still delivered")
        assert alice.websocket.sent[-1]["message"]["id"] == message.id
        assert carol.websocket.sent[-1]["type"] == "message:delivered"

    @pytest.mark.asyncio
    async def test_join_history_has_no_duplicates_of_live_messages(self, pipeline, store):
        alice, bob = connect("alice"), connect("bob")
        await pipeline.join(alice, "general")
        await asyncio.gather(
            pipeline.send(alice, "racing"),
            pipeline.join(bob, "general"),
        )
        history_ids = {m["id"] for m in bob.websocket.of_type("room:history")[0]["messages"]}
        live_ids = {e["message"]["id"] for e in bob.websocket.of_type("message:new")}
        assert not history_ids & live_ids
        stored = {m.id for m in store.recent_messages("general", 10)}
        assert stored == history_ids | live_ids


class TestOrdering:
    @pytest.mark.asyncio
    async def test_stored_history_follows_send_order(self, pipeline, store):
        alice, bob = connect("alice"), connect("bob")
        await pipeline.join(alice, "general")
        await pipeline.join(bob, "general")
        await pipeline.send(alice, "m1")
        await pipeline.send(bob, "m2")

        texts = [m.text for m in HistoryReplay(store).recent("general", 2)]
        assert texts == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_recreated_room_replays_full_history(self, pipeline, presence):
        alice, bob = connect("alice"), connect("bob")
        with patch("realchat.chat.presence.now_ms", return_value=1000):
            await pipeline.join(alice, "general")
            for i in range(3):
                await pipeline.send(alice, f"m{i}")
            await pipeline.leave(alice)
            assert presence.rooms() == []

            await pipeline.join(bob, "general")

        history = bob.websocket.of_type("room:history")[0]["messages"]
        assert [m["text"] for m in history] == [
            "alice joined", "m0", "m1", "m2", "alice left", "bob joined",
        ]

    @pytest.mark.asyncio
    async def test_restart_stamps_after_stored_messages(self, store):
        store.append_message(ChatMessage(room="general", text="from the future", createdAt=now_ms() + 60_000))
        presence = PresenceTracker(MessageClock(store.last_message_at()))
        pipeline = MessagePipeline(presence, store, HistoryReplay(store))

        alice = connect("alice")
        await pipeline.join(alice, "general")
        await pipeline.send(alice, "after restart")

        texts = [m.text for m in HistoryReplay(store).recent("general")]
        assert texts == ["from the future", "alice joined", "after restart"]

    @pytest.mark.asyncio
    async def test_join_racing_sends_still_gets_older_history(self, presence, store):
        store.append_message(ChatMessage(room="general", text="old", createdAt=1))
        pipeline = MessagePipeline(presence, store, HistoryReplay(store, default_limit=3))
        alice, bob = connect("alice"), connect("bob")
        await pipeline.join(alice, "general")

        append = store.append_message

        def slow_join_notice(message: ChatMessage) -> ChatMessage:
            if message.text == "bob joined":
                time.sleep(0.2)
            return append(message)

        with patch.object(store, "append_message", side_effect=slow_join_notice):
            await asyncio.gather(
                pipeline.join(bob, "general"),
                *[pipeline.send(alice, f"new{i}") for i in range(3)],
            )

        history = [m["text"] for m in bob.websocket.of_type("room:history")[0]["messages"]]
        assert history == ["old", "alice joined", "bob joined"]
        live = [e["message"]["text"] for e in bob.websocket.of_type("message:new")]
        assert live == ["new0", "new1", "new2"]


class TestEphemeral:
    @pytest.mark.asyncio
    async def test_typing_excludes_sender(self, pipeline):
        alice, bob = connect("alice"), connect("bob")
        await pipeline.join(alice, "general")
        await pipeline.join(bob, "general")

        await pipeline.typing(bob, True)
        assert alice.websocket.sent[-1]["type"] == "typing"
        assert alice.websocket.sent[-1]["username"] == "bob"
        assert alice.websocket.sent[-1]["isTyping"] is True
        assert bob.websocket.of_type("typing") == []

    @pytest.mark.asyncio
    async def test_read_receipt_not_persisted(self, pipeline, store):
        alice, bob = connect("alice"), connect("bob")
        await pipeline.join(alice, "general")
        await pipeline.join(bob, "general")
        message = await pipeline.send(alice, "hi")
        stored_before = len(store.recent_messages("general", 50))

        await pipeline.read_up_to(bob, message.id)
        seen = alice.websocket.sent[-1]
        assert seen["type"] == "message:seen"
        assert seen["readUpTo"] == message.id
        assert bob.websocket.of_type("message:seen") == []
        assert len(store.recent_messages("general", 50)) == stored_before

    @pytest.mark.asyncio
    async def test_ephemeral_without_room_is_ignored(self, pipeline):
        alice = connect("alice")
        await pipeline.typing(alice, True)
        await pipeline.read_up_to(alice, "m1")
        assert alice.websocket.sent == []


class TestHistoryReplay:
    def test_oldest_first_and_capped(self, store):
        for i in range(10):
            store.append_message(ChatMessage(room="general", text=f"m{i}", createdAt=1000 + i))
        history = HistoryReplay(store, default_limit=3, max_limit=5)
        assert [m.text for m in history.recent("general")] == ["m7", "m8", "m9"]
        assert len(history.recent("general", 50)) == 5
        # Older messages fill the page when newer ones are cut off.
        assert [m.text for m in history.recent("general", 5, up_to=1006)] == ["m2", "m3", "m4", "m5", "m6"]
