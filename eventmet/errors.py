"""Error taxonomy shared by the validator, repositories and the service."""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple


class EventMetError(Exception):
    """Base class for all errors raised by EventMet."""


@dataclass(frozen=True)
class FieldViolation:
    """One rejected field and the reason it was rejected."""

    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


class ValidationError(EventMetError):
    """Malformed or out-of-range input. Never retried."""

    def __init__(self, violations: Iterable[FieldViolation]):
        self.violations: Tuple[FieldViolation, ...] = tuple(violations)
        super().__init__(
            "; ".join(f"{v.field}: {v.message}" for v in self.violations) or "invalid input"
        )

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls([FieldViolation(field, message)])

    @property
    def fields(self) -> List[str]:
        return [violation.field for violation in self.violations]

    def to_dict(self) -> Dict:
        return {
            "error": "validation_failed",
            "violations": [violation.to_dict() for violation in self.violations],
        }


class RepositoryError(EventMetError):
    """I/O failure talking to the event repository."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class ComputeError(EventMetError):
    """Aggregation hit an internal inconsistency. Indicates a bug."""
