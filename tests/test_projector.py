"""View projection: channel filtering, optimistic overlay, separators and sequences."""

from datetime import date, datetime, timedelta, timezone

import pytest

from phantom_chat.models.message import DeliveryState, StoredMessage, ViewMessage
from phantom_chat.projector import SYSTEM_LABEL, ViewProjector
from phantom_chat.store.memory import MemoryStore


def ts(day: int, hour: int, minute: int = 0) -> int:
    return int(datetime(2024, 3, day, hour, minute, tzinfo=timezone.utc).timestamp() * 1000)


def stored(uuid, timestamp, sender="Alice", channel="room", content=None):
    return StoredMessage(uuid=uuid, sender=sender, content=content or uuid, channel=channel, timestamp=timestamp)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def projector(store):
    return ViewProjector(store, tz=timezone.utc)


async def seed(store, *messages):
    for msg in messages:
        await store.save_message(msg)


class TestLoad:

    @pytest.mark.asyncio
    async def test_only_selected_channel(self, store, projector):
        await seed(store, stored("a", ts(1, 10)), stored("b", ts(1, 11), channel="other"))
        messages = await projector.load("room")
        assert [m.uuid for m in messages] == ["a"]
        assert projector.channel == "room"

    @pytest.mark.asyncio
    async def test_append_ignores_other_channels(self, store, projector):
        await projector.load("room")
        assert not projector.append(projector.view_of(stored("x", ts(1, 10), channel="other")))
        assert projector.messages == []

    @pytest.mark.asyncio
    async def test_append_dedupes_by_uuid(self, store, projector):
        await projector.load("room")
        view = projector.view_of(stored("x", ts(1, 10)))
        assert projector.append(view)
        assert not projector.append(view)
        assert len(projector.messages) == 1

    @pytest.mark.asyncio
    async def test_optimistic_overlay_survives_reload(self, store, projector):
        await projector.load("room")
        pending = projector.view_of(stored("p", ts(1, 12), sender="Me")).model_copy(
            update={"delivery": DeliveryState.PENDING})
        projector.add_optimistic(pending)

        await projector.load("other")
        assert projector.messages == []
        messages = await projector.load("room")
        assert [m.uuid for m in messages] == ["p"]
        assert messages[0].delivery == DeliveryState.PENDING

    @pytest.mark.asyncio
    async def test_stored_copy_of_optimistic_is_not_duplicated(self, store, projector):
        await projector.load("room")
        msg = stored("p", ts(1, 12), sender="Me")
        projector.add_optimistic(projector.view_of(msg).model_copy(update={"delivery": DeliveryState.FAILED}))
        await store.save_message(msg)

        messages = await projector.load("room")
        assert len(messages) == 1
        assert messages[0].delivery == DeliveryState.FAILED

    @pytest.mark.asyncio
    async def test_confirmed_drops_overlay(self, store, projector):
        await projector.load("room")
        msg = stored("p", ts(1, 12), sender="Me")
        projector.add_optimistic(projector.view_of(msg))
        projector.set_delivery("p", DeliveryState.CONFIRMED)
        assert projector.optimistic("p") is None
        assert projector.find("p").delivery == DeliveryState.CONFIRMED

    @pytest.mark.asyncio
    async def test_notice_is_view_only(self, store, projector):
        await projector.load("room")
        notice = projector.add_notice("room", "Secure connection established")
        assert notice.sender == SYSTEM_LABEL
        assert notice.is_system
        assert len(store) == 0
        assert projector.add_notice("other", "nope") is None

    @pytest.mark.asyncio
    async def test_search(self, store, projector):
        await seed(store, stored("a", ts(1, 10), content="Lunch?"), stored("b", ts(1, 11), sender="Bob", content="ok"))
        await projector.load("room")
        assert [m.uuid for m in projector.search("lunch")] == ["a"]
        assert [m.uuid for m in projector.search("BOB")] == ["b"]
        assert len(projector.search(None)) == 2


class TestRows:

    @pytest.mark.asyncio
    async def test_separator_on_day_change(self, store, projector):
        await seed(store, stored("A", ts(1, 10)), stored("B", ts(2, 9)))
        await projector.load("room")
        rows = projector.rows()
        assert rows[0].date_separator == date(2024, 3, 1)
        assert rows[1].date_separator == date(2024, 3, 2)

    @pytest.mark.asyncio
    async def test_no_separator_same_day(self, store, projector):
        await seed(store, stored("A", ts(1, 10)), stored("C", ts(1, 23)))
        await projector.load("room")
        rows = projector.rows()
        assert rows[0].date_separator == date(2024, 3, 1)
        assert rows[1].date_separator is None

    @pytest.mark.asyncio
    async def test_separator_follows_tz(self, store):
        await seed(store, stored("A", ts(1, 10)), stored("B", ts(1, 23)))
        projector = ViewProjector(store, tz=timezone.utc)
        await projector.load("room")
        assert projector.rows()[1].date_separator is None

        shifted = ViewProjector(store, tz=timezone(timedelta(hours=2)))
        await shifted.load("room")
        assert shifted.rows()[1].date_separator == date(2024, 3, 2)

    @pytest.mark.asyncio
    async def test_sequence_flags(self, store, projector):
        await seed(
            store,
            stored("a1", ts(1, 10, 0)),
            stored("a2", ts(1, 10, 1)),
            stored("b1", ts(1, 10, 2), sender="Bob"),
            stored("b2", ts(2, 8, 0), sender="Bob"),
        )
        await projector.load("room")
        rows = projector.rows()
        flags = [(r.sequence_top, r.sequence_bottom) for r in rows]
        assert flags == [(False, True), (True, False), (False, False), (False, False)]

    @pytest.mark.asyncio
    async def test_untimestamped_row_continues_the_run(self, store, projector):
        await seed(store, stored("A", ts(1, 10)))
        await projector.load("room")
        projector.append(ViewMessage(uuid="N", sender="Alice", content="no time", channel="room"))
        projector.append(projector.view_of(stored("B", ts(1, 11))))
        projector.append(projector.view_of(stored("C", ts(2, 9))))

        rows = projector.rows()
        assert [r.message.uuid for r in rows] == ["A", "N", "B", "C"]
        assert [r.date_separator for r in rows] == [date(2024, 3, 1), None, None, date(2024, 3, 2)]
        assert [r.sequence_top for r in rows] == [False, True, True, False]
        assert [r.sequence_bottom for r in rows] == [True, True, False, False]
