from __future__ import annotations


class PasteError(Exception):
    """Base class for paste-related errors."""


class InvalidPasteParameters(PasteError):
    """Raised when a create request has an invalid shape."""


class PasteUnavailableError(PasteError):
    """
    Raised when a paste cannot be served.

    Covers never-created, time-expired and view-exhausted pastes alike, and
    the message does not say which one applies.
    """


class BackendUnavailableError(PasteError):
    """Raised when the key-value backend cannot be reached or times out."""


class ContentionExceededError(PasteError):
    """Raised when concurrent updates to one paste exhaust the retry budget."""


class IdCollisionError(PasteError):
    """Raised when every generated id for a new paste was already taken."""
