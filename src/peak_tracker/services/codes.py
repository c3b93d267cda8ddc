"""Session code generation and normalization."""

import secrets
from collections.abc import Callable

from peak_tracker.domain.errors import InvalidSessionCode

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 4


def generate_session_code(choice: Callable[[str], str] = secrets.choice) -> str:
    """Return a random code without visually ambiguous characters."""
    return "".join(choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_code(raw: str) -> str:
    """Normalize user input to the stored code form.

    Raises InvalidSessionCode when the input can't be a session code at all.
    """
    code = raw.strip().upper()
    if len(code) != CODE_LENGTH or not code.isascii() or not code.isalnum():
        raise InvalidSessionCode(
            f"Session codes are {CODE_LENGTH} letters or digits."
        )
    return code
