"""
Tests for the polling synchronizer
"""

import asyncio

import pytest

from studygroups.catalog import GroupCatalog
from studygroups.errors import NoOpenGroupError, NotMemberError, SyncError
from studygroups.membership import MembershipRegistry
from studygroups.sync import PollingSynchronizer, SessionState
from tests.fakes import ALICE, BOB, ControlledCall, make_message, network_error

SLOW = 3600  # timer never fires during the test
FAST = 0.01


async def _setup(api, errors, member_of=("g1", "g2"), **kwargs):
    catalog = GroupCatalog(api, errors)
    registry = MembershipRegistry(api, catalog, errors)
    registry._member_ids.update(member_of)
    sync = PollingSynchronizer(api, registry, errors, **kwargs)
    return registry, sync


class TestOpenAndClose:
    @pytest.mark.asyncio
    async def test_open_requires_membership(self, gateway, errors):
        gateway.add_group("g3")
        registry, sync = await _setup(gateway, errors, interval=SLOW)

        with pytest.raises(NotMemberError):
            await sync.open("g3")

        assert sync.session is None
        assert gateway.calls_to("list_messages") == []

    @pytest.mark.asyncio
    async def test_first_fetch_is_immediate(self, gateway, errors):
        gateway.add_group("g1", member=True)
        gateway.post_as("g1", BOB, "welcome")
        registry, sync = await _setup(gateway, errors, interval=SLOW)

        session = await sync.open("g1")

        assert session.state is SessionState.ACTIVE
        assert [m.content for m in session.messages] == ["welcome"]
        assert session.poll_handle is not None
        assert len(gateway.calls_to("list_messages")) == 1
        await sync.aclose()

    @pytest.mark.asyncio
    async def test_failed_first_fetch_stays_opening(self, gateway, errors):
        gateway.add_group("g1", member=True)
        gateway.fail_next("list_messages", network_error(500))
        registry, sync = await _setup(gateway, errors, interval=SLOW)

        session = await sync.open("g1")
        assert session.state is SessionState.OPENING
        assert isinstance(errors.latest("sync"), SyncError)

        assert await sync.poll_now() is True
        assert session.state is SessionState.ACTIVE
        assert errors.latest("sync") is None
        await sync.aclose()

    @pytest.mark.asyncio
    async def test_close_clears_poll_handle(self, gateway, errors):
        gateway.add_group("g1", member=True)
        registry, sync = await _setup(gateway, errors, interval=SLOW)
        session = await sync.open("g1")
        timer = session.poll_handle

        sync.close()
        await asyncio.sleep(0)

        assert sync.session is None
        assert session.poll_handle is None
        assert session.state is SessionState.CLOSED
        assert timer.cancelled()
        with pytest.raises(NoOpenGroupError):
            await sync.poll_now()

    @pytest.mark.asyncio
    async def test_switching_groups_cancels_old_timer(self, gateway, errors):
        gateway.add_group("g1", member=True)
        gateway.add_group("g2", member=True)
        registry, sync = await _setup(gateway, errors, interval=SLOW)

        first = await sync.open("g1")
        second = await sync.open("g2")

        assert first.state is SessionState.CLOSED
        assert first.poll_handle is None
        assert sync.session is second
        assert second.session_id > first.session_id
        await sync.aclose()


class TestPolling:
    @pytest.mark.asyncio
    async def test_ticks_pick_up_new_messages(self, gateway, errors):
        gateway.add_group("g1", member=True)
        registry, sync = await _setup(gateway, errors, interval=FAST)
        session = await sync.open("g1")

        gateway.post_as("g1", BOB, "anyone here?")
        for _ in range(50):
            await asyncio.sleep(FAST)
            if session.messages:
                break

        assert [m.content for m in session.messages] == ["anyone here?"]
        await sync.aclose()

    @pytest.mark.asyncio
    async def test_at_most_one_fetch_in_flight(self, errors):
        """Ticks coming due while a fetch is pending are skipped"""
        list_messages = ControlledCall()
        api = type("Api", (), {"list_messages": list_messages})()
        registry, sync = await _setup(api, errors, interval=FAST)

        opening = asyncio.ensure_future(sync.open("g1"))
        await asyncio.sleep(FAST * 10)

        assert len(list_messages.calls) == 1
        assert list_messages.in_flight == 1

        list_messages.resolve(0, [])
        await opening
        for _ in range(50):
            await asyncio.sleep(FAST)
            if len(list_messages.calls) > 1:
                break
        assert len(list_messages.calls) == 2
        assert list_messages.in_flight == 1
        await sync.aclose()

    @pytest.mark.asyncio
    async def test_tick_failure_keeps_polling(self, gateway, errors):
        gateway.add_group("g1", member=True)
        registry, sync = await _setup(gateway, errors, interval=FAST)
        session = await sync.open("g1")
        gateway.fail_next("list_messages", network_error())

        for _ in range(50):
            await asyncio.sleep(FAST)
            if len(gateway.calls_to("list_messages")) >= 3:
                break

        assert len(gateway.calls_to("list_messages")) >= 3
        assert session.state is SessionState.ACTIVE
        assert sync.session is session
        await sync.aclose()

    @pytest.mark.asyncio
    async def test_late_response_for_previous_group_is_discarded(self, errors):
        """Opening B while A's fetch is in flight: A's response never lands"""
        list_messages = ControlledCall()
        api = type("Api", (), {"list_messages": list_messages})()
        registry, sync = await _setup(api, errors, interval=SLOW)

        open_a = asyncio.ensure_future(sync.open("g1"))
        await asyncio.sleep(0)
        open_b = asyncio.ensure_future(sync.open("g2"))
        await asyncio.sleep(0)

        list_messages.resolve(1, [make_message("b1", BOB)])
        session_b = await open_b
        list_messages.resolve(0, [make_message("a1", ALICE)])
        session_a = await open_a

        assert [m.id for m in session_b.messages] == ["b1"]
        assert session_a.messages == []
        assert sync.session is session_b
        await sync.aclose()

    @pytest.mark.asyncio
    async def test_rapid_reopen_of_same_group(self, errors):
        """Session identity, not group id, decides whether a result applies"""
        list_messages = ControlledCall()
        api = type("Api", (), {"list_messages": list_messages})()
        registry, sync = await _setup(api, errors, interval=SLOW)

        first = asyncio.ensure_future(sync.open("g1"))
        await asyncio.sleep(0)
        second = asyncio.ensure_future(sync.open("g1"))
        await asyncio.sleep(0)

        list_messages.resolve(0, [make_message("old", ALICE)])
        await first
        assert sync.session.messages == []

        list_messages.resolve(1, [make_message("old", ALICE), make_message("new", BOB, 1000)])
        session = await second
        assert [m.id for m in session.messages] == ["old", "new"]
        await sync.aclose()

    @pytest.mark.asyncio
    async def test_replace_mode_dedupes_by_id(self, errors):
        list_messages = ControlledCall()
        api = type("Api", (), {"list_messages": list_messages})()
        registry, sync = await _setup(api, errors, interval=SLOW)

        opening = asyncio.ensure_future(sync.open("g1"))
        await asyncio.sleep(0)
        list_messages.resolve(0, [make_message("m1"), make_message("m1"), make_message("m2", BOB, 10)])
        session = await opening

        assert [m.id for m in session.messages] == ["m1", "m2"]
        assert list_messages.calls[0][1] == {"limit": None}
        await sync.aclose()

    @pytest.mark.asyncio
    async def test_merge_mode_keeps_older_history(self, errors):
        list_messages = ControlledCall()
        api = type("Api", (), {"list_messages": list_messages})()
        registry, sync = await _setup(api, errors, interval=SLOW, mode="merge", page_size=2)

        opening = asyncio.ensure_future(sync.open("g1"))
        await asyncio.sleep(0)
        list_messages.resolve(0, [make_message("m1", offset_ms=0), make_message("m2", offset_ms=10)])
        session = await opening

        tick = asyncio.ensure_future(sync.poll_now())
        await asyncio.sleep(0)
        list_messages.resolve(1, [make_message("m2", offset_ms=10), make_message("m3", BOB, 20)])
        assert await tick is True

        assert [m.id for m in session.messages] == ["m1", "m2", "m3"]
        assert list_messages.calls[1][1] == {"limit": 2}
        await sync.aclose()

    @pytest.mark.asyncio
    async def test_poll_now_skips_while_busy(self, errors):
        list_messages = ControlledCall()
        api = type("Api", (), {"list_messages": list_messages})()
        registry, sync = await _setup(api, errors, interval=SLOW)

        opening = asyncio.ensure_future(sync.open("g1"))
        await asyncio.sleep(0)
        assert await sync.poll_now() is False
        assert len(list_messages.calls) == 1

        list_messages.resolve(0, [])
        await opening
        await sync.aclose()

    def test_unknown_mode_rejected(self, gateway, errors):
        registry = MembershipRegistry(gateway, GroupCatalog(gateway, errors), errors)
        with pytest.raises(ValueError):
            PollingSynchronizer(gateway, registry, errors, mode="delta")
