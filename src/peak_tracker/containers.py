"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from supabase import create_client

from peak_tracker.adapters.file_identity_store import FileIdentityStore
from peak_tracker.adapters.supabase_session_repository import (
    SupabaseSessionRepository,
)
from peak_tracker.config import Settings
from peak_tracker.services.feed import ChangeFeed
from peak_tracker.services.identity import DeviceIdentityProvider
from peak_tracker.services.reconciler import MembershipReconciler
from peak_tracker.services.store import SessionStore
from peak_tracker.services.sweeper import ExpirySweeper


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    change_feed: ChangeFeed
    session_store: SessionStore
    expiry_sweeper: ExpirySweeper
    identity_provider: DeviceIdentityProvider
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    supabase_client = create_client(
        resolved_settings.supabase_url, resolved_settings.supabase_service_key
    )
    change_feed = ChangeFeed(max_pending=resolved_settings.feed_queue_size)
    session_store = SessionStore(
        repository=SupabaseSessionRepository(supabase_client),
        feed=change_feed,
        code_max_attempts=resolved_settings.code_max_attempts,
    )
    expiry_sweeper = ExpirySweeper(
        store=session_store,
        interval_seconds=resolved_settings.sweeper_interval_seconds,
    )
    identity_provider = DeviceIdentityProvider(
        FileIdentityStore(resolved_settings.device_id_path)
    )

    async def close_resources() -> None:
        await expiry_sweeper.stop()

    return AppContainer(
        settings=resolved_settings,
        change_feed=change_feed,
        session_store=session_store,
        expiry_sweeper=expiry_sweeper,
        identity_provider=identity_provider,
        close_resources=close_resources,
    )


def build_reconciler(
    container: AppContainer, device_id: str | None = None
) -> MembershipReconciler:
    """Create a reconciler for this device (or an explicit device id)."""
    return MembershipReconciler(
        store=container.session_store,
        feed=container.change_feed,
        device_id=device_id or container.identity_provider.get_device_id(),
    )
