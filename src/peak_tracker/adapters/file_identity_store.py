"""File-backed device identity storage."""

from dataclasses import dataclass
from pathlib import Path

from peak_tracker.services.identity import IdentityStore


@dataclass
class FileIdentityStore(IdentityStore):
    """Keeps the device id in a small text file."""

    path: Path

    def load(self) -> str | None:
        """Return the stored device id, if the file exists."""
        try:
            value = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return value or None

    def save(self, device_id: str) -> None:
        """Write the device id, creating parent directories as needed."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(device_id, encoding="utf-8")
