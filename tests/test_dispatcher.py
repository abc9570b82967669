"""Inbound envelopes applied through the engine to store and view."""

import asyncio

import pytest

from conftest import LOCAL_PEER, OTHER_PEER, REMOTE_PEER, deliver, incoming
from phantom_chat.channels import GLOBAL_CHANNEL, GLOBAL_WIRE_CHANNEL
from phantom_chat.dispatcher import Dispatcher, toggle_reaction, truncate_peer_id
from phantom_chat.keyed_lock import KeyedLock
from phantom_chat.models.envelope import PostEnvelope
from phantom_chat.models.events import NodeEvent, UIEvent
from phantom_chat.projector import ViewProjector
from phantom_chat.store.memory import MemoryStore


def post(uuid="m1", text="hi", timestamp=1000):
    return {"uuid": uuid, "type": "text", "text": text, "timestamp": timestamp}


class TestRelay:
    """Posts from peers"""

    @pytest.mark.asyncio
    async def test_global_post_is_stored_and_viewed(self, engine, store, transport):
        await deliver(engine, transport, incoming(post(), channel=GLOBAL_WIRE_CHANNEL))

        rows = await store.get_messages(GLOBAL_CHANNEL)
        assert len(rows) == 1
        assert rows[0].uuid == "m1"
        assert rows[0].content == "hi"
        assert rows[0].channel == GLOBAL_CHANNEL
        assert [m.uuid for m in engine.projector.messages] == ["m1"]

    @pytest.mark.asyncio
    async def test_same_post_twice_is_idempotent(self, engine, store, transport):
        payload = incoming(post(), channel=GLOBAL_WIRE_CHANNEL)
        await deliver(engine, transport, payload)
        await deliver(engine, transport, payload)

        assert len(await store.get_messages(GLOBAL_CHANNEL)) == 1
        assert len(engine.projector.messages) == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_insert_once(self, engine, store, transport):
        payload = incoming(post(), channel=GLOBAL_WIRE_CHANNEL)
        for _ in range(5):
            transport.emit(NodeEvent.NEW_MESSAGE, payload)
        await engine.drain()

        assert len(store) == 1
        assert len(engine.projector.messages) == 1

    @pytest.mark.asyncio
    async def test_other_channel_is_stored_not_viewed(self, engine, store, transport):
        await deliver(engine, transport, incoming(post(), channel=REMOTE_PEER))

        assert len(await store.get_messages(REMOTE_PEER)) == 1
        assert engine.projector.messages == []

    @pytest.mark.asyncio
    async def test_plain_text_payload_has_no_uuid(self, engine, store, transport):
        await deliver(engine, transport, incoming("just words", channel=GLOBAL_WIRE_CHANNEL))
        await deliver(engine, transport, incoming("just words", channel=GLOBAL_WIRE_CHANNEL))

        rows = await store.get_messages(GLOBAL_CHANNEL)
        assert [r.content for r in rows] == ["just words", "just words"]
        assert all(r.uuid is None for r in rows)

    @pytest.mark.asyncio
    async def test_sender_labels(self, engine, store, transport):
        await engine.add_contact(OTHER_PEER, "Carol")
        await deliver(engine, transport, incoming(post("a"), channel=GLOBAL_WIRE_CHANNEL, sender=REMOTE_PEER))
        await deliver(engine, transport, incoming(post("b"), channel=GLOBAL_WIRE_CHANNEL, sender=OTHER_PEER))
        await deliver(engine, transport, incoming(post("c"), channel=GLOBAL_WIRE_CHANNEL, sender=LOCAL_PEER))

        senders = [m.sender for m in engine.projector.messages]
        assert senders == [REMOTE_PEER[:8] + "...", "Carol", "Me"]

    @pytest.mark.asyncio
    async def test_notify_only_for_others(self, engine, events, transport):
        await deliver(engine, transport, incoming(post("a"), channel=GLOBAL_WIRE_CHANNEL, sender=LOCAL_PEER))
        assert (UIEvent.NOTIFY, None) not in events

        await deliver(engine, transport, incoming(post("b"), channel=GLOBAL_WIRE_CHANNEL))
        assert (UIEvent.NOTIFY, None) in events
        assert (UIEvent.VIEW_CHANGED, GLOBAL_CHANNEL) in events

    @pytest.mark.asyncio
    async def test_malformed_event_is_dropped(self, engine, store, transport):
        await deliver(engine, transport, {"sender": REMOTE_PEER})
        await deliver(engine, transport, "not json at all")
        assert len(store) == 0


class TestControlOps:
    """Edit, reaction and delete targeting by uuid"""

    @pytest.mark.asyncio
    async def test_edit(self, engine, store, transport):
        await deliver(engine, transport, incoming(post(), channel=GLOBAL_WIRE_CHANNEL))
        await deliver(engine, transport, incoming(
            {"type": "edit", "targetUuid": "m1", "content": "hi!"}, channel=GLOBAL_WIRE_CHANNEL))

        row = await store.get_message("m1")
        assert row.content == "hi!"
        assert row.last_edited is not None
        view = engine.projector.find("m1")
        assert view.content == "hi!"
        assert view.is_edited

    @pytest.mark.asyncio
    async def test_stale_edit_is_ignored(self, engine, store, transport):
        await deliver(engine, transport, incoming(post(), channel=GLOBAL_WIRE_CHANNEL))
        await deliver(engine, transport, incoming(
            {"type": "edit", "targetUuid": "m1", "content": "newer", "timestamp": 2000},
            channel=GLOBAL_WIRE_CHANNEL))
        await deliver(engine, transport, incoming(
            {"type": "edit", "targetUuid": "m1", "content": "older", "timestamp": 1500},
            channel=GLOBAL_WIRE_CHANNEL))

        assert (await store.get_message("m1")).content == "newer"
        assert engine.projector.find("m1").content == "newer"

    @pytest.mark.asyncio
    async def test_reaction_toggle(self, engine, store, transport):
        await deliver(engine, transport, incoming(post(), channel=GLOBAL_WIRE_CHANNEL))
        reaction = incoming({"type": "reaction", "targetUuid": "m1", "content": "👍"},
                            channel=GLOBAL_WIRE_CHANNEL, sender="p1")

        await deliver(engine, transport, reaction)
        assert (await store.get_message("m1")).reactions == {"👍": ["p1"]}
        assert engine.projector.find("m1").reactions == {"👍": ["p1"]}

        await deliver(engine, transport, reaction)
        assert "👍" not in (await store.get_message("m1")).reactions
        assert engine.projector.find("m1").reactions == {}

    @pytest.mark.asyncio
    async def test_concurrent_reactions_from_two_peers(self, engine, store, transport):
        await deliver(engine, transport, incoming(post(), channel=GLOBAL_WIRE_CHANNEL))
        for peer in ("p1", "p2"):
            transport.emit(NodeEvent.NEW_MESSAGE, incoming(
                {"type": "reaction", "targetUuid": "m1", "content": "🔥"}, channel=GLOBAL_WIRE_CHANNEL, sender=peer))
        await engine.drain()

        assert sorted((await store.get_message("m1")).reactions["🔥"]) == ["p1", "p2"]
        assert sorted(engine.projector.find("m1").reactions["🔥"]) == ["p1", "p2"]

    @pytest.mark.asyncio
    async def test_delete_then_noop(self, engine, store, transport):
        await deliver(engine, transport, incoming(post(), channel=GLOBAL_WIRE_CHANNEL))
        await deliver(engine, transport, incoming({"type": "delete", "targetUuid": "m1"}, channel=GLOBAL_WIRE_CHANNEL))

        assert await store.get_message("m1") is None
        assert engine.projector.find("m1") is None

        await deliver(engine, transport, incoming(
            {"type": "edit", "targetUuid": "m1", "content": "zombie"}, channel=GLOBAL_WIRE_CHANNEL))
        await deliver(engine, transport, incoming(
            {"type": "reaction", "targetUuid": "m1", "content": "👍"}, channel=GLOBAL_WIRE_CHANNEL))
        assert len(store) == 0
        assert engine.projector.messages == []

    @pytest.mark.asyncio
    async def test_deleted_post_is_not_resurrected(self, engine, store, transport):
        payload = incoming(post(), channel=GLOBAL_WIRE_CHANNEL)
        await deliver(engine, transport, payload)
        await deliver(engine, transport, incoming({"type": "delete", "targetUuid": "m1"}, channel=GLOBAL_WIRE_CHANNEL))
        await deliver(engine, transport, payload)

        assert len(store) == 0
        assert engine.projector.messages == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("envelope", [
        {"type": "edit", "targetUuid": "ghost", "content": "x"},
        {"type": "delete", "targetUuid": "ghost"},
        {"type": "reaction", "targetUuid": "ghost", "content": "👍"},
        {"type": "delete"},
    ])
    async def test_unknown_target_is_noop(self, engine, store, transport, envelope):
        await deliver(engine, transport, incoming(post(), channel=GLOBAL_WIRE_CHANNEL))
        await deliver(engine, transport, incoming(envelope, channel=GLOBAL_WIRE_CHANNEL))

        assert len(store) == 1
        assert len(engine.projector.messages) == 1
        assert (await store.get_message("m1")).content == "hi"

    @pytest.mark.asyncio
    async def test_echoed_control_from_local_peer_is_ignored(self, engine, store, transport):
        await deliver(engine, transport, incoming(post(), channel=GLOBAL_WIRE_CHANNEL))
        await deliver(engine, transport, incoming(
            {"type": "delete", "targetUuid": "m1"}, channel=GLOBAL_WIRE_CHANNEL, sender=LOCAL_PEER))
        assert await store.get_message("m1") is not None

    @pytest.mark.asyncio
    async def test_store_failure_keeps_view_update(self, engine, store, transport):
        await deliver(engine, transport, incoming(post(), channel=GLOBAL_WIRE_CHANNEL))
        store.fail_writes = True
        await deliver(engine, transport, incoming(
            {"type": "edit", "targetUuid": "m1", "content": "hi!"}, channel=GLOBAL_WIRE_CHANNEL))

        assert engine.projector.find("m1").content == "hi!"
        assert (await store.get_message("m1")).content == "hi"


class TestLocalActions:
    """Local edit, reaction and delete broadcast a control envelope"""

    @pytest.mark.asyncio
    async def test_edit_react_delete(self, engine, store, transport):
        await deliver(engine, transport, incoming(post(), channel=GLOBAL_WIRE_CHANNEL))

        assert await engine.edit_message("m1", "edited")
        assert await engine.react("m1", "🎉")
        assert (await store.get_message("m1")).reactions == {"🎉": [LOCAL_PEER]}
        assert await engine.delete_message("m1")

        sent = transport.sent_envelopes()
        assert [e["type"] for e in sent] == ["edit", "reaction", "delete"]
        assert all(e["targetUuid"] == "m1" for e in sent)
        assert all(channel == GLOBAL_WIRE_CHANNEL for channel, _ in transport.sent)
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_unknown_target_sends_nothing(self, engine, transport):
        assert not await engine.edit_message("ghost", "x")
        assert not await engine.react("ghost", "👍")
        assert not await engine.delete_message("ghost")
        assert transport.sent == []


class TestHelpers:

    def test_toggle_reaction_prunes_empty(self):
        once = toggle_reaction({}, "👍", "p1")
        assert once == {"👍": ["p1"]}
        assert toggle_reaction(once, "👍", "p1") == {}

    def test_toggle_reaction_dedupes(self):
        assert toggle_reaction({"👍": ["p1", "p1"]}, "👍", "p2") == {"👍": ["p1", "p2"]}

    def test_truncate_peer_id(self):
        assert truncate_peer_id("short") == "short"
        assert truncate_peer_id("123456789") == "12345678..."

    @pytest.mark.asyncio
    async def test_apply_without_engine(self):
        store = MemoryStore()
        projector = ViewProjector(store)
        await projector.load("room")
        dispatcher = Dispatcher(store, projector, KeyedLock())

        assert await dispatcher.apply(PostEnvelope(uuid="x", content="yo"), channel="room", sender_id="p1")
        assert not await dispatcher.apply(PostEnvelope(uuid="x", content="yo"), channel="room", sender_id="p1")
        assert len(store) == 1


    @pytest.mark.asyncio
    async def test_tombstones_are_capped(self):
        store = MemoryStore()
        projector = ViewProjector(store)
        await projector.load("room")
        dispatcher = Dispatcher(store, projector, KeyedLock(), max_tombstones=2)
        for uuid in ("a", "b", "c"):
            await dispatcher.apply(PostEnvelope(uuid=uuid, content=uuid), channel="room", sender_id="p1")
            assert await dispatcher.delete(uuid)

        assert not dispatcher.is_deleted("a")
        assert dispatcher.is_deleted("b")
        assert dispatcher.is_deleted("c")

class TestKeyedLock:

    @pytest.mark.asyncio
    async def test_same_key_serializes_and_entries_are_released(self):
        locks = KeyedLock()
        order = []

        async def worker(name, key, delay):
            async with locks.hold(key):
                order.append(f"{name}-in")
                await asyncio.sleep(delay)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a", "m1", 0.02), worker("b", "m1", 0), worker("c", "m2", 0))

        assert order.index("a-out") < order.index("b-in")
        assert order.index("c-in") < order.index("a-out")
        assert len(locks) == 0
        assert not locks.locked("m1")
