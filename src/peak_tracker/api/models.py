"""Pydantic models for the HTTP API."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from peak_tracker.domain.deltas import MemberDelta, MemberInserted, MemberUpdated
from peak_tracker.domain.models import Member, Session


class JoinRequest(BaseModel):
    username: str


class LocationRequest(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class SessionPayload(BaseModel):
    id: UUID
    code: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_domain(cls, session: Session) -> "SessionPayload":
        return cls(
            id=session.id,
            code=session.code,
            created_at=session.created_at,
            expires_at=session.expires_at,
        )


class MemberPayload(BaseModel):
    id: UUID
    session_id: UUID
    username: str
    device_id: str
    latitude: float | None = None
    longitude: float | None = None
    last_seen: datetime | None = None

    @classmethod
    def from_domain(cls, member: Member) -> "MemberPayload":
        return cls(
            id=member.id,
            session_id=member.session_id,
            username=member.username,
            device_id=member.device_id,
            latitude=member.latitude,
            longitude=member.longitude,
            last_seen=member.last_seen,
        )


class StartSessionResponse(BaseModel):
    session: SessionPayload
    member: MemberPayload


class JoinSessionResponse(BaseModel):
    session: SessionPayload
    member: MemberPayload
    members: list[MemberPayload]


class MembersResponse(BaseModel):
    members: list[MemberPayload]


class DeltaPayload(BaseModel):
    """Wire form of a member delta sent on the session feed."""

    type: Literal["inserted", "updated", "removed"]
    member_id: UUID
    member: MemberPayload | None = None

    @classmethod
    def from_domain(cls, delta: MemberDelta) -> "DeltaPayload":
        if isinstance(delta, MemberInserted):
            return cls(
                type="inserted",
                member_id=delta.member_id,
                member=MemberPayload.from_domain(delta.member),
            )
        if isinstance(delta, MemberUpdated):
            return cls(
                type="updated",
                member_id=delta.member_id,
                member=MemberPayload.from_domain(delta.member),
            )
        return cls(type="removed", member_id=delta.member_id)
