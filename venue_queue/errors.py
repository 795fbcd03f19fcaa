"""Error taxonomy and the shared error envelope.

Operations raise one of the exception classes below; the MQTT adapter turns
them into an `ErrorResponse` so every component replies with the same shape.

- `ValidationError`: malformed input or a transition the state machine does not
  allow. Nothing was written.
- `PolicyViolation`: a business rule was breached (grace extension already
  used, ETA extension cap reached, ...). Nothing was written.
- `ExternalFailure`: the store (or another collaborator) failed. The
  transition was aborted and may be retried.

Losing a race against another writer is *not* an error: see
`entries.TransitionResult`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


RETRY_MESSAGE = "Something went wrong. Please try again."


class VenueQueueError(Exception):
    code = "error"


class ValidationError(VenueQueueError):
    code = "bad_request"


class InvalidTransition(ValidationError):
    code = "invalid_transition"


class NotFound(ValidationError):
    code = "not_found"


class PolicyViolation(VenueQueueError):
    code = "policy_violation"


class ExternalFailure(VenueQueueError):
    code = "external_failure"


class WriteConflict(ExternalFailure):
    """A conditional write found the record in a different state."""

    code = "conflict"


def user_message(exc: BaseException) -> str:
    """Text suitable for showing to a patron or merchant."""
    if isinstance(exc, (ValidationError, PolicyViolation)):
        return str(exc) or exc.__class__.__name__
    return RETRY_MESSAGE


@dataclass(frozen=True)
class ErrorResponse:
    code: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorResponse":
        code = getattr(exc, "code", "error")
        return cls(code, user_message(exc))

    def to_message(self, *, corr_id: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {"type": "error", "code": self.code, "message": self.message}
        if corr_id is not None:
            msg["corr_id"] = corr_id
        return msg
