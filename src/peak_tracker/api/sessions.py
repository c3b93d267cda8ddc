"""Session, member and change feed endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING
from uuid import UUID  # noqa: TC003

from fastapi import APIRouter, Header, Request, Response, status
from fastapi.responses import StreamingResponse

from peak_tracker.api.models import (
    DeltaPayload,
    JoinRequest,
    JoinSessionResponse,
    LocationRequest,
    MemberPayload,
    MembersResponse,
    SessionPayload,
    StartSessionResponse,
)
from peak_tracker.domain.deltas import merge_members
from peak_tracker.domain.errors import SubscriptionClosed, SubscriptionError
from peak_tracker.services.store import validate_username

if TYPE_CHECKING:
    from peak_tracker.containers import AppContainer
    from peak_tracker.services.feed import ChangeFeed

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


def _container(request: Request) -> AppContainer:
    return request.app.state.container


@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def start_session(
    body: JoinRequest, request: Request, x_device_id: str = Header()
) -> StartSessionResponse:
    """Create a session and add the caller as its first member."""
    store = _container(request).session_store
    validate_username(body.username)
    session = await asyncio.to_thread(store.create_session)
    member = await asyncio.to_thread(
        store.create_member, session.id, body.username, x_device_id
    )
    return StartSessionResponse(
        session=SessionPayload.from_domain(session),
        member=MemberPayload.from_domain(member),
    )


@router.get("/sessions/{code}")
async def get_session(code: str, request: Request) -> SessionPayload:
    """Resolve a session code."""
    store = _container(request).session_store
    session = await asyncio.to_thread(store.get_session_by_code, code)
    return SessionPayload.from_domain(session)


@router.post("/sessions/{code}/members", status_code=status.HTTP_201_CREATED)
async def join_session(
    code: str, body: JoinRequest, request: Request, x_device_id: str = Header()
) -> JoinSessionResponse:
    """Join a session by code and return the current member list."""
    store = _container(request).session_store
    session = await asyncio.to_thread(store.get_session_by_code, code)
    member = await asyncio.to_thread(
        store.create_member, session.id, body.username, x_device_id
    )
    existing = await asyncio.to_thread(store.list_members, session.id)
    return JoinSessionResponse(
        session=SessionPayload.from_domain(session),
        member=MemberPayload.from_domain(member),
        members=[
            MemberPayload.from_domain(item) for item in merge_members(existing, member)
        ],
    )


@router.get("/sessions/{session_id}/members")
async def list_members(session_id: UUID, request: Request) -> MembersResponse:
    """Return the members of a live session in join order."""
    store = _container(request).session_store
    await asyncio.to_thread(store.get_session, session_id)
    members = await asyncio.to_thread(store.list_members, session_id)
    return MembersResponse(
        members=[MemberPayload.from_domain(member) for member in members]
    )


@router.put("/members/{member_id}/location", status_code=status.HTTP_204_NO_CONTENT)
async def update_location(
    member_id: UUID,
    body: LocationRequest,
    request: Request,
    x_device_id: str = Header(),
) -> Response:
    """Record the caller's own location."""
    store = _container(request).session_store
    await asyncio.to_thread(
        store.update_member_location,
        member_id,
        x_device_id,
        body.latitude,
        body.longitude,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/members/{member_id}", status_code=status.HTTP_204_NO_CONTENT)
async def leave_session(
    member_id: UUID, request: Request, x_device_id: str = Header()
) -> Response:
    """Remove the caller's membership. Repeating the call is harmless."""
    store = _container(request).session_store
    await asyncio.to_thread(store.delete_member, member_id, x_device_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/sessions/{session_id}/feed")
async def session_feed(session_id: UUID, request: Request) -> StreamingResponse:
    """Stream member deltas for a session as server-sent events.

    Clients should reconnect and reload the member list after an error event.
    """
    container = _container(request)
    await asyncio.to_thread(container.session_store.get_session, session_id)
    return StreamingResponse(
        stream_deltas(
            request,
            container.change_feed,
            session_id,
            heartbeat_seconds=container.settings.feed_heartbeat_seconds,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def format_event(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


async def stream_deltas(
    request: Request,
    feed: ChangeFeed,
    session_id: UUID,
    heartbeat_seconds: float = 15.0,
) -> AsyncIterator[str]:
    """Yield SSE frames for each delta until the client or session goes away.

    The subscription is opened on first iteration, so a response that is
    never streamed leaves nothing registered on the feed.
    """
    async with feed.subscribe(session_id) as subscription:
        while True:
            if await request.is_disconnected():
                break
            try:
                delta = await asyncio.wait_for(
                    subscription.get(), timeout=heartbeat_seconds
                )
            except TimeoutError:
                yield ": keep-alive\n\n"
                continue
            except SubscriptionClosed:
                yield format_event("end", json.dumps({"reason": "session ended"}))
                break
            except SubscriptionError as exc:
                logger.warning(
                    "Session feed interrupted",
                    extra={"session_id": str(subscription.session_id)},
                )
                yield format_event("error", json.dumps({"error": str(exc)}))
                break
            payload = DeltaPayload.from_domain(delta)
            yield format_event(payload.type, payload.model_dump_json())
