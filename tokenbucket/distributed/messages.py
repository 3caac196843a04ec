"""Wire messages exchanged between the distributed client and server."""

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union

from tokenbucket.models import AcquireResult, ErrorKind


class MessageType(IntEnum):
    """One-byte tag that precedes every payload."""
    ACQUIRE_REQUEST = 0x01
    ACQUIRE_RESPONSE = 0x02


class Outcome(IntEnum):
    GRANTED = 0
    DENIED = 1
    ERROR = 2


@dataclass(frozen=True)
class AcquireRequest:
    correlation_id: int
    key: bytes
    amount: int


@dataclass(frozen=True)
class AcquireResponse:
    """Server answer to one AcquireRequest.

    ``retry_after_ms`` is only meaningful for DENIED, ``error_kind`` only for
    ERROR.
    """
    correlation_id: int
    outcome: Outcome
    retry_after_ms: int = 0
    error_kind: Optional[int] = None

    @classmethod
    def from_result(cls, correlation_id: int, result: AcquireResult) -> "AcquireResponse":
        if result.allowed:
            return cls(correlation_id=correlation_id, outcome=Outcome.GRANTED)
        return cls(
            correlation_id=correlation_id,
            outcome=Outcome.DENIED,
            retry_after_ms=seconds_to_millis(result.retry_after or 0.0),
        )

    @classmethod
    def error(cls, correlation_id: int, kind: ErrorKind) -> "AcquireResponse":
        return cls(correlation_id=correlation_id, outcome=Outcome.ERROR, error_kind=int(kind))

    def to_result(self) -> AcquireResult:
        """Convert a GRANTED/DENIED response back into an AcquireResult."""
        if self.outcome == Outcome.GRANTED:
            return AcquireResult.granted()
        if self.outcome == Outcome.DENIED:
            return AcquireResult.denied(self.retry_after_ms / 1000.0)
        raise ValueError("error responses have no AcquireResult")


Message = Union[AcquireRequest, AcquireResponse]


def seconds_to_millis(seconds: float) -> int:
    """Round a wait hint up to whole milliseconds; callers are never early."""
    millis = seconds * 1000.0
    whole = int(millis)
    # Absorb float noise such as 1000.0000000001 before rounding up.
    if millis - whole > 1e-6:
        whole += 1
    if seconds > 0:
        whole = max(whole, 1)
    return min(max(0, whole), 0xFFFFFFFFFFFFFFFF)
