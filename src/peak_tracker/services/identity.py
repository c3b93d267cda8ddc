"""Per-device identity provider."""

from dataclasses import dataclass, field
from typing import Protocol
from uuid import uuid4


class IdentityStore(Protocol):
    """Persistence interface for the local device identifier."""

    def load(self) -> str | None:
        """Return the stored device id, if present."""

    def save(self, device_id: str) -> None:
        """Persist the device id."""


@dataclass
class DeviceIdentityProvider:
    """Issues a device id on first use and returns the same id afterwards."""

    store: IdentityStore
    _cached: str | None = field(default=None, init=False, repr=False)

    def get_device_id(self) -> str:
        """Return the persisted device id, creating it on first call."""
        if self._cached:
            return self._cached
        device_id = self.store.load()
        if not device_id:
            device_id = uuid4().hex
            self.store.save(device_id)
        self._cached = device_id
        return device_id
