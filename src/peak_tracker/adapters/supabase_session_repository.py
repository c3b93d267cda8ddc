"""Supabase-backed session and member repository."""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

import httpx
from postgrest.exceptions import APIError
from supabase import Client

from peak_tracker.domain.errors import CodeConflict, SessionNotFound, StoreUnavailable
from peak_tracker.domain.models import Member, Session
from peak_tracker.services.store import SessionRepository

_SESSION_COLUMNS = "id, code, created_at, expires_at"
_MEMBER_COLUMNS = "id, session_id, username, device_id, latitude, longitude, last_seen"
_UNIQUE_VIOLATION = "23505"
_FOREIGN_KEY_VIOLATION = "23503"


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    """Translate PostgREST and transport failures into store errors."""
    try:
        yield
    except APIError as exc:
        if exc.code == _UNIQUE_VIOLATION:
            raise CodeConflict(f"Failed to {action}: duplicate key") from exc
        if exc.code == _FOREIGN_KEY_VIOLATION:
            raise SessionNotFound() from exc
        raise StoreUnavailable(f"Failed to {action}") from exc
    except httpx.HTTPError as exc:
        raise StoreUnavailable(f"Failed to {action}") from exc


@dataclass
class SupabaseSessionRepository(SessionRepository):
    """Supabase implementation for sessions and session members."""

    client: Client

    def insert_session(
        self, code: str, created_at: datetime, expires_at: datetime
    ) -> Session:
        """Insert a session row and return it."""
        with _store_errors("create session"):
            response = (
                self.client.table("sessions")
                .insert(
                    {
                        "code": code,
                        "created_at": created_at.isoformat(),
                        "expires_at": expires_at.isoformat(),
                    }
                )
                .execute()
            )
        if not response.data:
            raise StoreUnavailable("Failed to create session")
        return _session_from_row(response.data[0])

    def get_session(self, session_id: UUID) -> Session | None:
        """Return a session by id, if present."""
        with _store_errors("load session"):
            response = (
                self.client.table("sessions")
                .select(_SESSION_COLUMNS)
                .eq("id", str(session_id))
                .limit(1)
                .execute()
            )
        if not response.data:
            return None
        return _session_from_row(response.data[0])

    def get_live_session_by_code(self, code: str, now: datetime) -> Session | None:
        """Return the non-expired session with this code, if present."""
        with _store_errors("look up session code"):
            response = (
                self.client.table("sessions")
                .select(_SESSION_COLUMNS)
                .eq("code", code)
                .gte("expires_at", now.isoformat())
                .limit(1)
                .execute()
            )
        if not response.data:
            return None
        return _session_from_row(response.data[0])

    def insert_member(self, session_id: UUID, username: str, device_id: str) -> Member:
        """Insert a member row with no location."""
        with _store_errors("join session"):
            response = (
                self.client.table("session_members")
                .insert(
                    {
                        "session_id": str(session_id),
                        "username": username,
                        "device_id": device_id,
                    }
                )
                .execute()
            )
        if not response.data:
            raise StoreUnavailable("Failed to join session")
        return _member_from_row(response.data[0])

    def get_member(self, member_id: UUID) -> Member | None:
        """Return a member by id, if present."""
        with _store_errors("load member"):
            response = (
                self.client.table("session_members")
                .select(_MEMBER_COLUMNS)
                .eq("id", str(member_id))
                .limit(1)
                .execute()
            )
        if not response.data:
            return None
        return _member_from_row(response.data[0])

    def list_members(self, session_id: UUID) -> list[Member]:
        """Return the session's members ordered by join time."""
        with _store_errors("list members"):
            response = (
                self.client.table("session_members")
                .select(_MEMBER_COLUMNS)
                .eq("session_id", str(session_id))
                .order("created_at")
                .execute()
            )
        return [_member_from_row(row) for row in response.data or []]

    def update_member_location(  # noqa: PLR0913
        self,
        member_id: UUID,
        device_id: str,
        latitude: float,
        longitude: float,
        seen_at: datetime,
    ) -> Member | None:
        """Write the location when it is not older than the stored one."""
        stamp = seen_at.isoformat()
        with _store_errors("update location"):
            response = (
                self.client.table("session_members")
                .update(
                    {
                        "latitude": latitude,
                        "longitude": longitude,
                        "last_seen": stamp,
                    }
                )
                .eq("id", str(member_id))
                .eq("device_id", device_id)
                .or_(f'last_seen.is.null,last_seen.lte."{stamp}"')
                .execute()
            )
        if not response.data:
            return None
        return _member_from_row(response.data[0])

    def delete_member(self, member_id: UUID, device_id: str) -> Member | None:
        """Delete a member owned by device_id and return the deleted row."""
        with _store_errors("leave session"):
            response = (
                self.client.table("session_members")
                .delete()
                .eq("id", str(member_id))
                .eq("device_id", device_id)
                .execute()
            )
        if not response.data:
            return None
        return _member_from_row(response.data[0])

    def list_expired_session_ids(self, now: datetime) -> list[UUID]:
        """Return ids of sessions that expired before now."""
        with _store_errors("list expired sessions"):
            response = (
                self.client.table("sessions")
                .select("id")
                .lt("expires_at", now.isoformat())
                .execute()
            )
        return [UUID(row["id"]) for row in response.data or []]

    def delete_members_for_sessions(self, session_ids: list[UUID]) -> list[Member]:
        """Delete the members of the given sessions."""
        with _store_errors("delete expired members"):
            response = (
                self.client.table("session_members")
                .delete()
                .in_("session_id", [str(session_id) for session_id in session_ids])
                .execute()
            )
        return [_member_from_row(row) for row in response.data or []]

    def delete_sessions(self, session_ids: list[UUID]) -> int:
        """Delete the given sessions and return the number removed."""
        with _store_errors("delete expired sessions"):
            response = (
                self.client.table("sessions")
                .delete()
                .in_("id", [str(session_id) for session_id in session_ids])
                .execute()
            )
        return len(response.data or [])


def _parse_timestamp(value: object) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _session_from_row(row: dict[str, object]) -> Session:
    created_at = _parse_timestamp(row["created_at"])
    expires_at = _parse_timestamp(row["expires_at"])
    if created_at is None or expires_at is None:
        raise StoreUnavailable("Session row is missing timestamps")
    return Session(
        id=UUID(str(row["id"])),
        code=str(row["code"]),
        created_at=created_at,
        expires_at=expires_at,
    )


def _member_from_row(row: dict[str, object]) -> Member:
    latitude = row.get("latitude")
    longitude = row.get("longitude")
    return Member(
        id=UUID(str(row["id"])),
        session_id=UUID(str(row["session_id"])),
        username=str(row["username"]),
        device_id=str(row["device_id"]),
        latitude=float(latitude) if latitude is not None else None,
        longitude=float(longitude) if longitude is not None else None,
        last_seen=_parse_timestamp(row.get("last_seen")),
    )
