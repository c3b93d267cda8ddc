"""ASGI entrypoint for the peak tracker API."""

from peak_tracker.api.app import create_app
from peak_tracker.containers import build_container

app = create_app(build_container())
