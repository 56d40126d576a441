"""Domain exceptions raised by services and converted at the handler boundary."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for every error a client may be told about."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(ChatError):
    """Referenced user, message, room or invitation does not exist."""

    status_code = 404


class PermissionDeniedError(ChatError):
    """Actor lacks the tier, authorship or membership the action needs."""

    status_code = 403

    def __init__(self, message: str, required_tier: str | None = None) -> None:
        super().__init__(message)
        self.required_tier = required_tier


class RoomLockedError(PermissionDeniedError):
    """Room access denied; carries what the client needs for an upgrade prompt."""

    def __init__(self, room: str, required_tier: str, message: str) -> None:
        super().__init__(message, required_tier=required_tier)
        self.room = room

    def to_payload(self) -> dict:
        return {
            "room": self.room,
            "requiredTier": self.required_tier,
            "message": self.message,
        }


class ValidationFailure(ChatError):
    """Missing or malformed input."""

    status_code = 422


class SignalAlreadyClosedError(ValidationFailure):
    """Outcome transition attempted on a signal that is no longer pending."""


class PersistenceFailure(ChatError):
    """The row store rejected a read or write."""

    status_code = 503
