"""Domain models for location-sharing sessions."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

SESSION_TTL = timedelta(hours=18)
USERNAME_MAX_LENGTH = 20


@dataclass(frozen=True)
class Session:
    """Represents a persisted sharing session."""

    id: UUID
    code: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        """Return true once the session lifetime has elapsed."""
        return self.expires_at < now


@dataclass(frozen=True)
class Member:
    """Represents one device's membership in a session."""

    id: UUID
    session_id: UUID
    username: str
    device_id: str
    latitude: float | None = None
    longitude: float | None = None
    last_seen: datetime | None = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None
