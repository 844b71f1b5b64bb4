"""Dispatch error taxonomy.

Every failure the core surfaces to a caller is one of these. The HTTP layer
maps them to status codes in ``main.py``.
"""


class DispatchError(Exception):
    """Base class for all dispatch errors."""

    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class NotFound(DispatchError):
    """Referenced rider or order does not exist."""

    status_code = 404


class Conflict(DispatchError):
    """A concurrent mutation won the race, or the entity is no longer free."""

    status_code = 409


class InvalidTransition(DispatchError):
    """Requested status change violates the order or rider state machine."""

    status_code = 422


class UnresolvableLocation(DispatchError):
    """An address could not be geocoded to coordinates."""

    status_code = 422


class ProviderUnavailable(DispatchError):
    """Distance provider failed or timed out."""

    status_code = 503


class NoCandidates(DispatchError):
    """No available rider could be matched. Retryable: the order keeps searching."""

    status_code = 202
