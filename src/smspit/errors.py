from __future__ import annotations


class SmspitError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(SmspitError):
    """A required capture field is missing or empty."""

    status_code = 400


class DecodeError(SmspitError):
    """The request payload could not be decoded (bad JSON, bad form, wrong types)."""

    status_code = 400


class AuthError(SmspitError):
    status_code = 401


class NotFoundError(SmspitError):
    status_code = 404


class DuplicateMessageIdError(Exception):
    """The store already holds a message with this id."""


class DeliveryError(Exception):
    """An event could not be handed to a subscriber."""
