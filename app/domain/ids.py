"""Paste id generation.

Ids are fixed-length base62 strings (a-zA-Z0-9) drawn from ``secrets``, so
they are URL-safe and not guessable from previously issued ids.
"""

from __future__ import annotations

import secrets
import string

BASE62_ALPHABET = string.ascii_letters + string.digits

DEFAULT_ID_LENGTH = 10


class IdGenerator:
    """Generates random paste ids of a fixed length."""

    def __init__(self, id_length: int = DEFAULT_ID_LENGTH) -> None:
        if id_length < 1:
            raise ValueError("id_length must be >= 1.")
        self.id_length = id_length

    def generate(self) -> str:
        """
        Return a fresh random id.

        Uniqueness is not checked here; the caller writes with ``if_absent``
        and asks for another id when the write reports a collision.
        """
        return "".join(
            secrets.choice(BASE62_ALPHABET) for _ in range(self.id_length)
        )
