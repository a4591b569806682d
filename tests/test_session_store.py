"""Tests for SessionStore — lifecycle, idle expiry and per-key serialization."""
import asyncio
import pytest
from datetime import timedelta

from context.session import SessionStore, SessionSweeper
from context.state_machine import ConversationMachine, ConversationState, EventType, MachineEvent


@pytest.fixture
def store(stub_actions) -> SessionStore:
    return SessionStore(lambda key: ConversationMachine(key, stub_actions), idle_timeout=timedelta(minutes=30))


def age(session, minutes: int):
    session.last_activity = session.last_activity - timedelta(minutes=minutes)


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_get_creates_idle_session(self, store):
        session = await store.get("111")
        assert session.customer_key == "111"
        assert session.state == ConversationState.IDLE
        assert store.count == 1

    @pytest.mark.asyncio
    async def test_get_returns_same_session(self, store):
        first = await store.get("111")
        second = await store.get("111")
        assert first is second
        assert store.count == 1

    @pytest.mark.asyncio
    async def test_sessions_are_per_key(self, store):
        a = await store.get("111")
        b = await store.get("222")
        assert a is not b
        assert a.machine is not b.machine

    @pytest.mark.asyncio
    async def test_update_sets_flags_and_data(self, store):
        session = await store.update("111", audio_mode=True, locale="es")
        assert session.audio_mode is True
        assert session.data == {"locale": "es"}

    @pytest.mark.asyncio
    async def test_reset_removes_session(self, store):
        first = await store.get("111")
        await store.reset("111")
        assert store.peek("111") is None
        assert await store.get("111") is not first


class TestIdleExpiry:
    @pytest.mark.asyncio
    async def test_expired_session_is_replaced(self, store):
        session = await store.get("111")
        await session.machine.send(MachineEvent(EventType.START))
        age(session, 31)

        fresh = await store.get("111")
        assert fresh is not session
        assert fresh.state == ConversationState.IDLE

    @pytest.mark.asyncio
    async def test_recent_session_is_resumed(self, store):
        session = await store.get("111")
        age(session, 29)
        assert await store.get("111") is session

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, store):
        old = await store.get("111")
        await store.get("222")
        age(old, 45)

        assert await store.sweep() == 1
        assert store.peek("111") is None
        assert store.peek("222") is not None

    @pytest.mark.asyncio
    async def test_sweep_skips_busy_session(self, store):
        async with store.session("111") as session:
            age(session, 45)
            assert store.is_busy("111")
            assert await store.sweep() == 0
        assert store.peek("111") is not None

    @pytest.mark.asyncio
    async def test_sweeper_runs_in_background(self, store):
        old = await store.get("111")
        age(old, 45)
        sweeper = SessionSweeper(store, interval_seconds=0)
        await sweeper.start_background()
        for _ in range(20):
            await asyncio.sleep(0)
            if store.peek("111") is None:
                break
        await sweeper.stop()
        assert store.peek("111") is None


class TestSerialization:
    @pytest.mark.asyncio
    async def test_same_key_messages_do_not_overlap(self, store):
        order: list[str] = []

        async def handle(tag: str, hold: float):
            async with store.session("111"):
                order.append(f"{tag}-start")
                await asyncio.sleep(hold)
                order.append(f"{tag}-end")

        first = asyncio.create_task(handle("a", 0.05))
        await asyncio.sleep(0)
        second = asyncio.create_task(handle("b", 0))
        await asyncio.gather(first, second)

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self, store):
        order: list[str] = []

        async def handle(key: str, hold: float):
            async with store.session(key):
                order.append(f"{key}-start")
                await asyncio.sleep(hold)
                order.append(f"{key}-end")

        await asyncio.gather(handle("111", 0.05), handle("222", 0))
        assert order.index("222-start") < order.index("111-end")

    @pytest.mark.asyncio
    async def test_session_context_touches_activity(self, store):
        session = await store.get("111")
        age(session, 10)
        async with store.session("111") as held:
            assert held is session
        assert session.idle_for() < timedelta(minutes=1)
