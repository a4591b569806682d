"""
Session Store — one live conversation per customer key.

Each session owns a ConversationMachine (state + cart + checkout data)
plus session-level flags such as audio mode. Sessions expire after a fixed
idle period:

  - lazily: `get` replaces an expired session with a fresh one
  - actively: `sweep` (run by SessionSweeper) deletes expired sessions

All messages for one key are serialized through `session(key)`, which holds
a per-key lock for the whole processing of a message, including any backend
calls made by the machine. The session map itself is guarded by a store-level
lock so the sweep never races a get/replace for the same key.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Optional

from context.cart import Cart
from context.state_machine import ConversationMachine, ConversationState, OrderContext

logger = structlog.get_logger()

MachineFactory = Callable[[str], ConversationMachine]

DEFAULT_IDLE_TIMEOUT = timedelta(minutes=30)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────
#  Session Model
# ──────────────────────────────────────────────────────

@dataclass
class Session:
    customer_key: str
    machine: ConversationMachine
    created_at: datetime = field(default_factory=_now)
    last_activity: datetime = field(default_factory=_now)
    audio_mode: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def state(self) -> ConversationState:
        return self.machine.state

    @property
    def context(self) -> OrderContext:
        return self.machine.context

    @property
    def cart(self) -> Cart:
        return self.machine.context.cart

    def idle_for(self, now: datetime = None) -> timedelta:
        return (now or _now()) - self.last_activity

    def is_expired(self, timeout: timedelta, now: datetime = None) -> bool:
        return self.idle_for(now) >= timeout

    def touch(self):
        self.last_activity = _now()


# ──────────────────────────────────────────────────────
#  Session Store
# ──────────────────────────────────────────────────────

class SessionStore:
    """
    In-memory session registry keyed by customer key.
    Absence is never an error: a missing or expired session is recreated.
    """

    def __init__(
        self,
        machine_factory: MachineFactory,
        idle_timeout: timedelta = DEFAULT_IDLE_TIMEOUT,
    ):
        self.machine_factory = machine_factory
        self.idle_timeout = idle_timeout
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._map_lock = asyncio.Lock()

    def _create(self, customer_key: str) -> Session:
        session = Session(customer_key=customer_key, machine=self.machine_factory(customer_key))
        self._sessions[customer_key] = session
        logger.info("session_created", customer_key=customer_key)
        return session

    async def get(self, customer_key: str) -> Session:
        async with self._map_lock:
            session = self._sessions.get(customer_key)
            if session and not session.is_expired(self.idle_timeout):
                return session
            if session:
                logger.info("session_expired",
                            customer_key=customer_key,
                            state=session.state.value,
                            idle_seconds=round(session.idle_for().total_seconds()))
            return self._create(customer_key)

    async def update(self, customer_key: str, **fields: Any) -> Session:
        session = await self.get(customer_key)
        for name, value in fields.items():
            if name in ("audio_mode", "last_activity"):
                setattr(session, name, value)
            else:
                session.data[name] = value
        if "last_activity" not in fields:
            session.touch()
        return session

    async def reset(self, customer_key: str):
        async with self._map_lock:
            removed = self._sessions.pop(customer_key, None)
            lock = self._locks.get(customer_key)
            if lock and not lock.locked():
                del self._locks[customer_key]
        if removed:
            logger.info("session_reset", customer_key=customer_key)

    async def sweep(self) -> int:
        """Delete expired sessions. Sessions with a message in flight are skipped."""
        now = _now()
        removed = 0
        async with self._map_lock:
            for key, session in list(self._sessions.items()):
                if not session.is_expired(self.idle_timeout, now):
                    continue
                lock = self._locks.get(key)
                if lock and lock.locked():
                    continue
                del self._sessions[key]
                self._locks.pop(key, None)
                removed += 1
        if removed:
            logger.info("sessions_swept", removed=removed, remaining=len(self._sessions))
        return removed

    # ── Per-key serialization ─────────────────────────────────

    async def _key_lock(self, customer_key: str) -> asyncio.Lock:
        async with self._map_lock:
            lock = self._locks.get(customer_key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[customer_key] = lock
            return lock

    @asynccontextmanager
    async def session(self, customer_key: str) -> AsyncIterator[Session]:
        """Hold the session for one message; later messages for the key wait."""
        lock = await self._key_lock(customer_key)
        async with lock:
            session = await self.get(customer_key)
            session.touch()
            try:
                yield session
            finally:
                session.touch()

    # ── Introspection ─────────────────────────────────────────

    def peek(self, customer_key: str) -> Optional[Session]:
        """Return the stored session without expiry handling."""
        return self._sessions.get(customer_key)

    def is_busy(self, customer_key: str) -> bool:
        lock = self._locks.get(customer_key)
        return bool(lock and lock.locked())

    @property
    def count(self) -> int:
        return len(self._sessions)


# ──────────────────────────────────────────────────────
#  Session Sweeper
# ──────────────────────────────────────────────────────

class SessionSweeper:
    """Background task that periodically removes idle sessions."""

    def __init__(self, store: SessionStore, interval_seconds: int = 300):
        self.store = store
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("session_sweeper_started", interval=self.interval)
        while True:
            try:
                await asyncio.sleep(self.interval)
                await self.store.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("session_sweep_error", error=str(e))
