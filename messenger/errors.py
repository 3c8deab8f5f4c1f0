"""
Error taxonomy for the relay.

Every domain failure is a MessengerError carrying the HTTP status it maps to.
The HTTP layer renders these as {"detail": message}; the WebSocket layer
renders them as {"type": "error", "message": message} frames.
"""


class MessengerError(Exception):
    """Base class for all domain errors."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MessengerError):
    """A required field is missing or malformed."""

    status_code = 422


class AuthError(MessengerError):
    """Missing, invalid or expired token or code."""

    status_code = 401


class ConflictError(MessengerError):
    status_code = 409


class UsernameAlreadySetError(ConflictError):
    pass


class UsernameTakenError(ConflictError):
    pass


class NotFoundError(MessengerError):
    status_code = 404


class StorageError(MessengerError):
    """A durable write or read failed."""

    status_code = 500
