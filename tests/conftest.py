"""Shared test fixtures."""

import asyncio
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import UUID, uuid4

import pytest

from peak_tracker.adapters.file_identity_store import FileIdentityStore
from peak_tracker.config import Settings
from peak_tracker.containers import AppContainer
from peak_tracker.domain.errors import CodeConflict, SessionNotFound
from peak_tracker.domain.models import Member, Session
from peak_tracker.services.feed import ChangeFeed
from peak_tracker.services.identity import DeviceIdentityProvider
from peak_tracker.services.store import SessionRepository, SessionStore
from peak_tracker.services.sweeper import ExpirySweeper


@dataclass
class FakeClock:
    """Controllable clock that advances a microsecond per reading."""

    now: datetime = field(
        default_factory=lambda: datetime(2026, 1, 10, 9, 0, tzinfo=UTC)
    )
    step: timedelta = timedelta(microseconds=1)

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@dataclass
class InMemorySessionRepository(SessionRepository):
    """Thread-safe in-memory session repository for tests."""

    sessions: dict[UUID, Session] = field(default_factory=dict)
    members: dict[UUID, Member] = field(default_factory=dict)
    fail_with: Exception | None = None
    update_calls: list[tuple[UUID, float, float]] = field(default_factory=list)
    update_gate: threading.Event | None = None
    update_started: threading.Event = field(default_factory=threading.Event)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def insert_session(
        self, code: str, created_at: datetime, expires_at: datetime
    ) -> Session:
        self._check()
        with self._lock:
            if any(session.code == code for session in self.sessions.values()):
                raise CodeConflict(code)
            session = Session(
                id=uuid4(), code=code, created_at=created_at, expires_at=expires_at
            )
            self.sessions[session.id] = session
            return session

    def get_session(self, session_id: UUID) -> Session | None:
        self._check()
        return self.sessions.get(session_id)

    def get_live_session_by_code(self, code: str, now: datetime) -> Session | None:
        self._check()
        with self._lock:
            for session in self.sessions.values():
                if session.code == code and session.expires_at >= now:
                    return session
        return None

    def insert_member(self, session_id: UUID, username: str, device_id: str) -> Member:
        self._check()
        with self._lock:
            if session_id not in self.sessions:
                raise SessionNotFound()
            member = Member(
                id=uuid4(),
                session_id=session_id,
                username=username,
                device_id=device_id,
            )
            self.members[member.id] = member
            return member

    def get_member(self, member_id: UUID) -> Member | None:
        self._check()
        return self.members.get(member_id)

    def list_members(self, session_id: UUID) -> list[Member]:
        self._check()
        with self._lock:
            return [m for m in self.members.values() if m.session_id == session_id]

    def update_member_location(  # noqa: PLR0913
        self,
        member_id: UUID,
        device_id: str,
        latitude: float,
        longitude: float,
        seen_at: datetime,
    ) -> Member | None:
        self._check()
        self.update_calls.append((member_id, latitude, longitude))
        self.update_started.set()
        if self.update_gate is not None:
            self.update_gate.wait(timeout=5)
        with self._lock:
            member = self.members.get(member_id)
            if member is None or member.device_id != device_id:
                return None
            if member.last_seen is not None and member.last_seen > seen_at:
                return None
            updated = Member(
                id=member.id,
                session_id=member.session_id,
                username=member.username,
                device_id=member.device_id,
                latitude=latitude,
                longitude=longitude,
                last_seen=seen_at,
            )
            self.members[member_id] = updated
            return updated

    def delete_member(self, member_id: UUID, device_id: str) -> Member | None:
        self._check()
        with self._lock:
            member = self.members.get(member_id)
            if member is None or member.device_id != device_id:
                return None
            return self.members.pop(member_id)

    def list_expired_session_ids(self, now: datetime) -> list[UUID]:
        self._check()
        with self._lock:
            return [s.id for s in self.sessions.values() if s.expires_at < now]

    def delete_members_for_sessions(self, session_ids: list[UUID]) -> list[Member]:
        self._check()
        with self._lock:
            doomed = [m for m in self.members.values() if m.session_id in session_ids]
            for member in doomed:
                self.members.pop(member.id)
            return doomed

    def delete_sessions(self, session_ids: list[UUID]) -> int:
        self._check()
        with self._lock:
            deleted = 0
            for session_id in session_ids:
                if self.sessions.pop(session_id, None) is not None:
                    deleted += 1
            return deleted


@dataclass
class MemoryIdentityStore:
    """Identity store that keeps the id in memory."""

    value: str | None = None
    saves: int = 0

    def load(self) -> str | None:
        return self.value

    def save(self, device_id: str) -> None:
        self.value = device_id
        self.saves += 1


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until predicate holds or the timeout passes."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemorySessionRepository:
    return InMemorySessionRepository()


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed(max_pending=64)


@pytest.fixture
def store(
    repository: InMemorySessionRepository, feed: ChangeFeed, clock: FakeClock
) -> SessionStore:
    return SessionStore(repository=repository, feed=feed, clock=clock)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_service_key="header.payload.signature",
        admin_token="admin-token",
        device_id_path=tmp_path / "device_id",
    )


@pytest.fixture
def container(
    settings: Settings, store: SessionStore, feed: ChangeFeed
) -> AppContainer:
    sweeper = ExpirySweeper(store=store, interval_seconds=60)

    async def close_resources() -> None:
        await sweeper.stop()

    return AppContainer(
        settings=settings,
        change_feed=feed,
        session_store=store,
        expiry_sweeper=sweeper,
        identity_provider=DeviceIdentityProvider(
            FileIdentityStore(settings.device_id_path)
        ),
        close_resources=close_resources,
    )
