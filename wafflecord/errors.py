"""
Exception hierarchy.

Store errors are raised to the caller of a single operation (except
OpenFailedError, which aborts startup). DeliveryError is raised by the
messenger and absorbed per subscriber by the dispatcher.
"""

from __future__ import annotations


class WafflecordError(Exception):
    """Base class for all wafflecord errors."""


class StoreError(WafflecordError):
    """Base class for subscription store errors."""


class OpenFailedError(StoreError):
    """The backing storage could not be opened or created."""


class EncodeError(StoreError):
    """A subscriber could not be encoded into a store record."""


class StoreIOError(StoreError):
    """A read or write against the backing storage failed."""


class MalformedRecordError(StoreError):
    """A stored value could not be decoded into a subscriber."""


class DeliveryError(WafflecordError):
    """A Discord API call failed."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status
