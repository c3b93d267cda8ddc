"""Tests for the expiry sweeper."""

import asyncio
from datetime import timedelta

from peak_tracker.domain.errors import StoreUnavailable
from peak_tracker.services.store import SessionStore
from peak_tracker.services.sweeper import ExpirySweeper, SweepReport
from tests.conftest import FakeClock, InMemorySessionRepository, eventually


def test_sweep_reports_cleaned_count(
    store: SessionStore, repository: InMemorySessionRepository, clock: FakeClock
) -> None:
    session = store.create_session()
    store.create_member(session.id, "Yeti", "device-a")
    sweeper = ExpirySweeper(store=store)

    assert sweeper.sweep().as_payload() == {"cleaned": 0}
    report = sweeper.sweep(clock.now + timedelta(hours=18, minutes=1))

    assert report == SweepReport(cleaned=1)
    assert repository.members == {}
    assert sweeper.sweep(clock.now + timedelta(days=1)).cleaned == 0


def test_sweep_failure_is_reported_not_raised(
    store: SessionStore, repository: InMemorySessionRepository
) -> None:
    repository.fail_with = StoreUnavailable("database offline")
    sweeper = ExpirySweeper(store=store)

    report = sweeper.sweep()

    assert report.error == "database offline"
    assert report.as_payload() == {"error": "database offline"}


def test_periodic_sweeper_survives_failures_and_stops(
    store: SessionStore, repository: InMemorySessionRepository, clock: FakeClock
) -> None:
    async def scenario() -> None:
        session = store.create_session()
        clock.advance(hours=19)
        repository.fail_with = StoreUnavailable("blip")
        sweeper = ExpirySweeper(store=store, interval_seconds=0.01)

        sweeper.start()
        sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.03)
        repository.fail_with = None
        await eventually(lambda: session.id not in repository.sessions)
        await sweeper.stop()

        assert not sweeper.running
        await sweeper.stop()

    asyncio.run(scenario())
