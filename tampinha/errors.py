from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Reason(str, Enum):
    MALFORMED = "MALFORMED"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"
    ALREADY_SCANNED = "ALREADY_SCANNED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_REDEEMED = "ALREADY_REDEEMED"


@dataclass(frozen=True)
class Rejection:
    """Expected business outcome; returned to the caller, never raised."""

    reason: Reason
    detail: Optional[str] = None


class DecodeError(ValueError):
    pass


class StoreUnavailable(RuntimeError):
    """The durable store failed; the unit was rolled back and may be retried."""
