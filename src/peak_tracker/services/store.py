"""Session store: the single source of truth for sessions and members."""

import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol
from uuid import UUID

from peak_tracker.domain.deltas import (
    MemberDelta,
    MemberInserted,
    MemberRemoved,
    MemberUpdated,
)
from peak_tracker.domain.errors import (
    CodeConflict,
    InvalidLocation,
    InvalidUsername,
    MemberNotFound,
    SessionNotFound,
    StoreUnavailable,
    ValidationError,
)
from peak_tracker.domain.models import SESSION_TTL, USERNAME_MAX_LENGTH, Member, Session
from peak_tracker.services.codes import generate_session_code, normalize_code
from peak_tracker.services.feed import ChangeFeed

logger = logging.getLogger(__name__)


class SessionRepository(Protocol):
    """Persistence interface for sessions and their members.

    Implementations raise StoreUnavailable for backend failures.
    """

    def insert_session(
        self, code: str, created_at: datetime, expires_at: datetime
    ) -> Session:
        """Insert a session, raising CodeConflict if the code is taken."""

    def get_session(self, session_id: UUID) -> Session | None:
        """Return a session by id, if present."""

    def get_live_session_by_code(self, code: str, now: datetime) -> Session | None:
        """Return the non-expired session with this exact code, if present."""

    def insert_member(self, session_id: UUID, username: str, device_id: str) -> Member:
        """Insert a member, raising SessionNotFound if the session is gone."""

    def get_member(self, member_id: UUID) -> Member | None:
        """Return a member by id, if present."""

    def list_members(self, session_id: UUID) -> list[Member]:
        """Return the members of a session in insertion order."""

    def update_member_location(  # noqa: PLR0913
        self,
        member_id: UUID,
        device_id: str,
        latitude: float,
        longitude: float,
        seen_at: datetime,
    ) -> Member | None:
        """Write a location unless it is older than the stored one.

        Returns the updated member, or None when no row was written.
        """

    def delete_member(self, member_id: UUID, device_id: str) -> Member | None:
        """Delete a member owned by device_id and return the deleted row."""

    def list_expired_session_ids(self, now: datetime) -> list[UUID]:
        """Return ids of sessions whose expiry is before now."""

    def delete_members_for_sessions(self, session_ids: list[UUID]) -> list[Member]:
        """Delete all members of the given sessions and return them."""

    def delete_sessions(self, session_ids: list[UUID]) -> int:
        """Delete the given sessions and return how many rows were removed."""


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def validate_username(username: str) -> str:
    """Return the trimmed username or raise InvalidUsername."""
    cleaned = username.strip()
    if not cleaned or len(cleaned) > USERNAME_MAX_LENGTH:
        raise InvalidUsername(
            f"Name must be between 1 and {USERNAME_MAX_LENGTH} characters."
        )
    return cleaned


def validate_location(latitude: float, longitude: float) -> None:
    """Raise InvalidLocation unless the coordinates are on the globe."""
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise InvalidLocation("Coordinates must be finite numbers.")
    if not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0:
        raise InvalidLocation("Coordinates are out of range.")


@dataclass
class SessionStore:
    """Validates, persists and publishes session and member changes."""

    repository: SessionRepository
    feed: ChangeFeed | None = None
    code_max_attempts: int = 8
    clock: Callable[[], datetime] = field(default=utc_now)
    code_generator: Callable[[], str] = field(default=generate_session_code)
    _sweep_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def create_session(self) -> Session:
        """Create a session with a fresh code, retrying on code collisions."""
        created_at = self.clock()
        expires_at = created_at + SESSION_TTL
        for attempt in range(1, self.code_max_attempts + 1):
            code = self.code_generator()
            try:
                session = self.repository.insert_session(code, created_at, expires_at)
            except CodeConflict:
                logger.info(
                    "Session code collision, retrying",
                    extra={"code": code, "attempt": attempt},
                )
                continue
            logger.info("Created session", extra={"session_id": str(session.id)})
            return session
        raise StoreUnavailable(
            f"Could not allocate a free session code after "
            f"{self.code_max_attempts} attempts."
        )

    def get_session(self, session_id: UUID) -> Session:
        """Return a live session by id."""
        session = self.repository.get_session(session_id)
        if session is None or session.is_expired(self.clock()):
            raise SessionNotFound()
        return session

    def get_session_by_code(self, code: str) -> Session:
        """Return the live session for a user-typed code."""
        normalized = normalize_code(code)
        session = self.repository.get_live_session_by_code(normalized, self.clock())
        if session is None:
            raise SessionNotFound()
        return session

    def create_member(self, session_id: UUID, username: str, device_id: str) -> Member:
        """Add a member with no location to a live session."""
        cleaned = validate_username(username)
        if not device_id:
            raise ValidationError("A device id is required.")
        self.get_session(session_id)
        member = self.repository.insert_member(session_id, cleaned, device_id)
        self._publish(session_id, MemberInserted(member))
        return member

    def list_members(self, session_id: UUID) -> list[Member]:
        """Return the session's members in join order."""
        return self.repository.list_members(session_id)

    def update_member_location(  # noqa: PLR0913
        self,
        member_id: UUID,
        device_id: str,
        latitude: float,
        longitude: float,
        seen_at: datetime | None = None,
    ) -> Member:
        """Record the owning device's location for a member.

        Writes older than the stored last_seen are ignored, so last_seen never
        moves backwards. Raises MemberNotFound when the member is gone or
        belongs to another device.
        """
        validate_location(latitude, longitude)
        stamp = seen_at or self.clock()
        updated = self.repository.update_member_location(
            member_id, device_id, latitude, longitude, stamp
        )
        if updated is not None:
            self._publish(updated.session_id, MemberUpdated(updated))
            return updated
        current = self.repository.get_member(member_id)
        if current is None or current.device_id != device_id:
            raise MemberNotFound()
        return current

    def delete_member(self, member_id: UUID, device_id: str) -> None:
        """Remove a member owned by device_id; missing rows are ignored."""
        deleted = self.repository.delete_member(member_id, device_id)
        if deleted is not None:
            self._publish(
                deleted.session_id, MemberRemoved(deleted.id, deleted.session_id)
            )

    def delete_expired_sessions(self, now: datetime | None = None) -> int:
        """Delete expired sessions and their members, returning the count.

        Sweeps in this process run one at a time so a session's subscribers
        see every Removed delta before the session is ended.
        """
        cutoff = now or self.clock()
        with self._sweep_lock:
            session_ids = self.repository.list_expired_session_ids(cutoff)
            if not session_ids:
                return 0
            removed = self.repository.delete_members_for_sessions(session_ids)
            deleted = self.repository.delete_sessions(session_ids)
            for member in removed:
                self._publish(
                    member.session_id, MemberRemoved(member.id, member.session_id)
                )
            if self.feed is not None:
                for session_id in session_ids:
                    self.feed.end_session(session_id)
        return deleted

    def _publish(self, session_id: UUID, delta: MemberDelta) -> None:
        if self.feed is not None:
            self.feed.publish(session_id, delta)
