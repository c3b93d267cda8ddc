"""Client-side membership state machine for one device."""

import asyncio
import logging
from collections.abc import AsyncIterable, Callable
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from uuid import UUID

from peak_tracker.domain.deltas import (
    MemberDelta,
    MemberRemoved,
    MemberUpdated,
    apply_delta,
    merge_members,
)
from peak_tracker.domain.errors import (
    NotFoundError,
    PeakTrackerError,
    SessionNotFound,
    StoreUnavailable,
    SubscriptionError,
)
from peak_tracker.domain.models import Member, Session
from peak_tracker.services.codes import normalize_code
from peak_tracker.services.feed import ChangeFeed, Subscription
from peak_tracker.services.store import SessionStore, validate_username

logger = logging.getLogger(__name__)

SESSION_ENDED_MESSAGE = "This session has ended."
STORE_UNAVAILABLE_MESSAGE = "Couldn't reach the server. Please try again."
ALREADY_ACTIVE_MESSAGE = "Leave the current session before joining another."


class ReconcilerStatus(StrEnum):
    """Lifecycle of a client's membership."""

    IDLE = "idle"
    JOINING = "joining"
    ACTIVE = "active"
    LEFT = "left"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcilerState:
    """Snapshot handed to the presentation layer."""

    status: ReconcilerStatus = ReconcilerStatus.IDLE
    session: Session | None = None
    members: tuple[Member, ...] = ()
    member_id: UUID | None = None
    loading: bool = False
    error: str | None = None


@dataclass(frozen=True)
class _LocationSample:
    latitude: float
    longitude: float
    issued_at: datetime


StateListener = Callable[[ReconcilerState], None]


class MembershipReconciler:
    """Drives start/join/report/leave for a single device.

    Store calls run in worker threads. Public operations never raise store or
    feed errors; they record a message in ``state.error`` instead. Every
    session cycle gets a new generation number so work started for an old
    session can't touch the state of a newer one.
    """

    def __init__(
        self,
        store: SessionStore,
        feed: ChangeFeed,
        device_id: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.feed = feed
        self.device_id = device_id
        self._clock = clock or store.clock
        self._state = ReconcilerState()
        self._listeners: list[StateListener] = []
        self._generation = 0
        self._subscription: Subscription | None = None
        self._feed_task: asyncio.Task[None] | None = None
        self._tracking_task: asyncio.Task[None] | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._pending: _LocationSample | None = None
        self._leaving = False

    @property
    def state(self) -> ReconcilerState:
        return self._state

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener and return a function removing it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def start(self, username: str) -> None:
        """Create a new session and join it as its first member."""
        if not self._enter_joining():
            return
        generation = self._generation
        subscription: Subscription | None = None
        try:
            validate_username(username)
            session = await asyncio.to_thread(self.store.create_session)
            subscription = self.feed.subscribe(session.id)
            member = await asyncio.to_thread(
                self.store.create_member, session.id, username, self.device_id
            )
        except Exception as exc:  # noqa: BLE001
            if subscription is not None:
                subscription.close()
            self._fail(generation, exc)
            return
        except BaseException:
            if subscription is not None:
                subscription.close()
            raise
        self._activate(generation, session, member, (member,), subscription)

    async def join(self, code: str, username: str) -> None:
        """Join the live session identified by code."""
        if not self._enter_joining():
            return
        generation = self._generation
        subscription: Subscription | None = None
        member: Member | None = None
        try:
            normalized = normalize_code(code)
            validate_username(username)
            session = await asyncio.to_thread(
                self.store.get_session_by_code, normalized
            )
            subscription = self.feed.subscribe(session.id)
            member = await asyncio.to_thread(
                self.store.create_member, session.id, username, self.device_id
            )
            existing = await asyncio.to_thread(self.store.list_members, session.id)
        except Exception as exc:  # noqa: BLE001
            if subscription is not None:
                subscription.close()
            if member is not None:
                await self._discard_member(member)
            self._fail(generation, exc)
            return
        except BaseException:
            if subscription is not None:
                subscription.close()
            raise
        members = merge_members(existing, member)
        self._activate(generation, session, member, members, subscription)

    async def report_location(self, latitude: float, longitude: float) -> None:
        """Push the device's location, coalescing with any in-flight write.

        Only one store write per member is outstanding at a time; a sample
        arriving meanwhile replaces any sample still waiting.
        """
        task = self._submit_sample(latitude, longitude)
        if task is not None:
            await asyncio.wait({task})

    def track(self, samples: AsyncIterable[tuple[float, float]]) -> None:
        """Feed a stream of (latitude, longitude) samples into the session."""
        if self._state.status is not ReconcilerStatus.ACTIVE:
            return
        if self._tracking_task is not None and not self._tracking_task.done():
            self._tracking_task.cancel()
        self._tracking_task = asyncio.create_task(
            self._consume_samples(self._generation, samples)
        )

    async def leave(self) -> None:
        """Remove this device from the session and reset local state."""
        state = self._state
        if state.status is not ReconcilerStatus.ACTIVE or self._leaving:
            return
        generation = self._generation
        member_id = state.member_id
        self._leaving = True
        self._set_state(replace(state, loading=True))
        try:
            if member_id is not None:
                await asyncio.to_thread(
                    self.store.delete_member, member_id, self.device_id
                )
        except NotFoundError:
            pass
        except PeakTrackerError:
            logger.warning(
                "Failed to delete member on leave",
                extra={"member_id": str(member_id)},
                exc_info=True,
            )
        finally:
            self._leaving = False
            if generation == self._generation:
                self._teardown(ReconcilerStatus.LEFT)

    def disconnect(self) -> None:
        """Release the feed and background tasks without leaving the session."""
        if self._state.status is ReconcilerStatus.ACTIVE:
            self._teardown(ReconcilerStatus.IDLE)

    def _enter_joining(self) -> bool:
        if self._state.status in {ReconcilerStatus.JOINING, ReconcilerStatus.ACTIVE}:
            self._set_state(replace(self._state, error=ALREADY_ACTIVE_MESSAGE))
            return False
        self._generation += 1
        self._set_state(ReconcilerState(status=ReconcilerStatus.JOINING, loading=True))
        return True

    def _activate(
        self,
        generation: int,
        session: Session,
        member: Member,
        members: tuple[Member, ...],
        subscription: Subscription,
    ) -> None:
        if generation != self._generation:
            subscription.close()
            return
        self._subscription = subscription
        self._set_state(
            ReconcilerState(
                status=ReconcilerStatus.ACTIVE,
                session=session,
                members=members,
                member_id=member.id,
            )
        )
        self._feed_task = asyncio.create_task(
            self._follow_feed(generation, subscription)
        )
        logger.info(
            "Joined session",
            extra={"session_id": str(session.id), "member_id": str(member.id)},
        )

    def _fail(self, generation: int, exc: Exception) -> None:
        if generation != self._generation:
            return
        if not isinstance(exc, PeakTrackerError):
            logger.exception("Unexpected error while joining a session")
        self._set_state(
            ReconcilerState(status=ReconcilerStatus.FAILED, error=_describe(exc))
        )

    async def _discard_member(self, member: Member) -> None:
        try:
            await asyncio.to_thread(
                self.store.delete_member, member.id, self.device_id
            )
        except PeakTrackerError:
            logger.warning(
                "Failed to clean up member after join error",
                extra={"member_id": str(member.id)},
                exc_info=True,
            )

    def _submit_sample(
        self, latitude: float, longitude: float
    ) -> asyncio.Task[None] | None:
        state = self._state
        if state.status is not ReconcilerStatus.ACTIVE or state.member_id is None:
            return None
        self._pending = _LocationSample(latitude, longitude, self._clock())
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(
                self._flush_locations(self._generation, state.member_id)
            )
        return self._flush_task

    async def _flush_locations(self, generation: int, member_id: UUID) -> None:
        while generation == self._generation and self._pending is not None:
            sample, self._pending = self._pending, None
            try:
                member = await asyncio.to_thread(
                    self.store.update_member_location,
                    member_id,
                    self.device_id,
                    sample.latitude,
                    sample.longitude,
                    sample.issued_at,
                )
            except NotFoundError:
                if generation == self._generation and not self._leaving:
                    self._teardown(ReconcilerStatus.LEFT, SESSION_ENDED_MESSAGE)
                return
            except Exception as exc:  # noqa: BLE001
                if not isinstance(exc, PeakTrackerError):
                    logger.exception("Unexpected error while reporting location")
                if generation == self._generation:
                    self._set_state(replace(self._state, error=_describe(exc)))
                continue
            if generation == self._generation:
                self._apply(generation, MemberUpdated(member))

    async def _consume_samples(
        self, generation: int, samples: AsyncIterable[tuple[float, float]]
    ) -> None:
        try:
            async for latitude, longitude in samples:
                if generation != self._generation:
                    return
                self._submit_sample(latitude, longitude)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Location source failed", exc_info=True)
            if generation == self._generation:
                self._set_state(
                    replace(self._state, error=f"Location unavailable: {exc}")
                )

    async def _follow_feed(self, generation: int, subscription: Subscription) -> None:
        try:
            async for delta in subscription:
                if generation != self._generation:
                    return
                self._apply(generation, delta)
        except SubscriptionError:
            logger.warning(
                "Change feed interrupted, resubscribing",
                extra={"session_id": str(subscription.session_id)},
            )
            await self._resubscribe(generation)
            return
        if generation == self._generation:
            await self._resubscribe(generation)

    async def _resubscribe(self, generation: int) -> None:
        session = self._state.session
        if generation != self._generation or session is None:
            return
        subscription = self.feed.subscribe(session.id)
        try:
            members = await asyncio.to_thread(self.store.list_members, session.id)
        except PeakTrackerError as exc:
            subscription.close()
            if generation == self._generation:
                self._subscription = None
                self._set_state(replace(self._state, error=_describe(exc)))
            return
        if generation != self._generation:
            subscription.close()
            return
        if not any(member.id == self._state.member_id for member in members):
            subscription.close()
            if self._leaving:
                return
            self._teardown(ReconcilerStatus.LEFT, SESSION_ENDED_MESSAGE)
            return
        self._subscription = subscription
        self._set_state(replace(self._state, members=merge_members(members)))
        self._feed_task = asyncio.create_task(
            self._follow_feed(generation, subscription)
        )

    def _apply(self, generation: int, delta: MemberDelta) -> None:
        if generation != self._generation:
            return
        own_member_id = self._state.member_id
        if isinstance(delta, MemberRemoved) and delta.member_id == own_member_id:
            if self._leaving:
                return
            self._teardown(ReconcilerStatus.LEFT, SESSION_ENDED_MESSAGE)
            return
        members = apply_delta(self._state.members, delta)
        self._set_state(replace(self._state, members=members))

    def _teardown(self, status: ReconcilerStatus, error: str | None = None) -> None:
        self._generation += 1
        self._pending = None
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in (self._feed_task, self._tracking_task, self._flush_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._feed_task = None
        self._tracking_task = None
        self._flush_task = None
        self._set_state(ReconcilerState(status=status, error=error))

    def _set_state(self, state: ReconcilerState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")


def _describe(exc: Exception) -> str:
    if isinstance(exc, StoreUnavailable):
        return STORE_UNAVAILABLE_MESSAGE
    if isinstance(exc, SessionNotFound):
        return str(exc)
    if isinstance(exc, PeakTrackerError):
        return str(exc) or type(exc).__name__
    return STORE_UNAVAILABLE_MESSAGE
