"""Exceptions raised by the registries and the boost store."""


class HeatingError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(HeatingError):
    status_code = 400


class ConfigReferenceError(InvalidInput):
    """A room points at a device that doesn't exist (or has no sensor)."""


class NotFound(HeatingError):
    status_code = 404


class Conflict(HeatingError):
    status_code = 409


class TickInProgress(Conflict):
    """A control loop tick is already running."""
