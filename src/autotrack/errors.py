"""Exception types shared across the tracker."""

from __future__ import annotations

from enum import Enum


class AutotrackError(Exception):
    """Base class for tracker errors."""


class CollectionError(AutotrackError):
    """Raised when the sample store cannot persist or read data."""


class ClassificationError(AutotrackError):
    """Raised by the online classifier transport; never reaches the user."""


class ConfigurationError(AutotrackError):
    """Raised when an enabled integration is missing required settings."""


class RegistrationErrorKind(str, Enum):
    NETWORK = "network"
    AUTH = "auth"
    INVALID_PROJECT = "invalid_project"


class RegistrationError(AutotrackError):
    """Raised when the time-tracking service rejects or misses a registration."""

    def __init__(self, kind: RegistrationErrorKind, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}")


class CycleInProgressError(AutotrackError):
    """Raised when an analysis cycle is requested while another one runs."""
