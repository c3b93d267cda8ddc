"""Admin API endpoints with simple token auth."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from peak_tracker.containers import AppContainer

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_admin_token(request: Request) -> str:
    container: AppContainer = request.app.state.container
    return container.settings.admin_token


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    admin_token: str = Depends(_get_admin_token),
) -> None:
    """Ensure requests include a valid admin token."""
    if not x_admin_token or x_admin_token != admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)


@router.get("/health", dependencies=[Depends(require_admin)])
async def admin_health() -> dict[str, str]:
    """Admin health check endpoint."""
    return {"status": "ok"}


@router.post("/cleanup-sessions", dependencies=[Depends(require_admin)])
async def cleanup_sessions(request: Request) -> JSONResponse:
    """Delete expired sessions; meant to be called by a scheduler."""
    container: AppContainer = request.app.state.container
    report = await asyncio.to_thread(container.expiry_sweeper.sweep)
    status_code = (
        status.HTTP_500_INTERNAL_SERVER_ERROR
        if report.error is not None
        else status.HTTP_200_OK
    )
    return JSONResponse(report.as_payload(), status_code=status_code)
