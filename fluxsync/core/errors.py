"""
Fetch failure taxonomy

Failures crossing the backend boundary are values, not exceptions:
every fetch returns a FetchResult carrying either a payload or a FetchError.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum


class FetchErrorKind(Enum):
    NETWORK = "network"        # Unreachable / connection dropped
    TIMEOUT = "timeout"        # Backend did not answer in time
    HTTP = "http"              # Non-2xx response
    API = "api"                # 2xx response without ok=true
    MALFORMED = "malformed"    # Body not a JSON object
    CONFIG = "config"          # Client not configured, nothing sent
    VALIDATION = "validation"  # Locally detected inconsistency


@dataclass(frozen=True)
class FetchError:
    """Classified failure of a single backend resource"""
    kind: FetchErrorKind
    resource: str
    message: str
    status: Optional[int] = None

    @property
    def is_timeout(self) -> bool:
        return self.kind == FetchErrorKind.TIMEOUT

    @property
    def backend_refused(self) -> bool:
        """Backend answered but said no (as opposed to not answering)"""
        return self.kind in (FetchErrorKind.HTTP, FetchErrorKind.API)

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.resource}: {self.kind.value} {self.status} :: {self.message}"
        return f"{self.resource}: {self.kind.value} :: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "resource": self.resource,
            "message": self.message,
            "status": self.status,
        }


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one fetch: payload on success, error otherwise"""
    resource: str
    payload: Optional[Dict[str, Any]] = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, resource: str, payload: Dict[str, Any]) -> "FetchResult":
        return cls(resource=resource, payload=payload)

    @classmethod
    def failure(
        cls,
        resource: str,
        kind: FetchErrorKind,
        message: str,
        status: Optional[int] = None,
    ) -> "FetchResult":
        return cls(
            resource=resource,
            error=FetchError(kind=kind, resource=resource, message=message, status=status),
        )


def truncate(text: str, limit: int) -> str:
    """Clip diagnostic text to a bounded length"""
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "…"
