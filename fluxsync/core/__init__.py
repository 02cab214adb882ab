"""Core models and failure taxonomy"""
from .errors import FetchError, FetchErrorKind, FetchResult
from .models import ChangeSet, EntityRow, Snapshot, Suggestion, TrialResult

__all__ = [
    "FetchError",
    "FetchErrorKind",
    "FetchResult",
    "ChangeSet",
    "EntityRow",
    "Snapshot",
    "Suggestion",
    "TrialResult",
]
