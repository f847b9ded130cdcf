"""Error taxonomy and user-friendly translation."""

from .exceptions import (
    AlreadyClaimed,
    DependenciesNotMet,
    EpicNotActive,
    ExternalSyncFailure,
    InvalidTransition,
    LockTimeout,
    NoCapacity,
    NotAssignee,
    NotFoundError,
    ReviewerUnavailable,
    StaleEvent,
    TeammateError,
    VersionConflict,
)
from .translator import ErrorTranslator, UserFriendlyError

__all__ = [
    "TeammateError",
    "InvalidTransition",
    "VersionConflict",
    "AlreadyClaimed",
    "LockTimeout",
    "NoCapacity",
    "ReviewerUnavailable",
    "StaleEvent",
    "ExternalSyncFailure",
    "NotFoundError",
    "EpicNotActive",
    "DependenciesNotMet",
    "NotAssignee",
    "ErrorTranslator",
    "UserFriendlyError",
]
