"""Custom exceptions for the 14CUX live-data library."""


class CUXError(Exception):
    """Base exception for all 14CUX library errors."""

    pass


class NotConnectedError(CUXError):
    """Raised when an operation needs a running worker or an open device link."""

    pass


class InvalidCommandValue(CUXError):
    """Raised when a command argument is out of range or unknown."""

    pass


class LinkIOError(CUXError):
    """Raised by device link implementations when a point read fails outright.

    The scheduler treats this exactly like a read that returned ``ok=False``.
    """

    pass


class LifecycleError(CUXError):
    """Raised when the connection lifecycle is driven out of order."""

    pass
