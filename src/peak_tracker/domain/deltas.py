"""Member change deltas and the rules for applying them to a local view."""

from dataclasses import dataclass
from uuid import UUID

from peak_tracker.domain.models import Member


@dataclass(frozen=True)
class MemberInserted:
    """A member joined the session."""

    member: Member

    @property
    def member_id(self) -> UUID:
        return self.member.id


@dataclass(frozen=True)
class MemberUpdated:
    """A member reported a new location."""

    member: Member

    @property
    def member_id(self) -> UUID:
        return self.member.id


@dataclass(frozen=True)
class MemberRemoved:
    """A member left or was swept with its session."""

    member_id: UUID
    session_id: UUID


MemberDelta = MemberInserted | MemberUpdated | MemberRemoved


def apply_delta(members: tuple[Member, ...], delta: MemberDelta) -> tuple[Member, ...]:
    """Return the member view after applying one delta.

    Known ids are replaced in place, unknown ids are appended and removals of
    absent ids are ignored, so replaying a delta is harmless.
    """
    if isinstance(delta, MemberRemoved):
        return tuple(member for member in members if member.id != delta.member_id)
    incoming = delta.member
    if any(member.id == incoming.id for member in members):
        return tuple(
            incoming if member.id == incoming.id else member for member in members
        )
    return (*members, incoming)


def merge_members(
    members: list[Member] | tuple[Member, ...], *extra: Member
) -> tuple[Member, ...]:
    """Combine member lists, one entry per id at its first position."""
    merged: tuple[Member, ...] = ()
    for member in (*members, *extra):
        merged = apply_delta(merged, MemberInserted(member))
    return merged
