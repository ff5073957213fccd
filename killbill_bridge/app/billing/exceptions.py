"""Error taxonomy for billing platform integration."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass(eq=False)
class BillingError(Exception):
    """Base error surfaced by the billing subsystem."""

    message: str
    code: str = "billing_error"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = None

    retryable: ClassVar[bool] = False

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass(eq=False)
class ConfigurationError(BillingError):
    """Missing or rejected billing platform credentials. Never retried."""

    code: str = "billing_configuration_error"
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE


@dataclass(eq=False)
class NotFound(BillingError):
    """The billing platform has no record for the requested key."""

    code: str = "billing_not_found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass(eq=False)
class ValidationError(BillingError):
    """The billing platform rejected the request payload."""

    code: str = "billing_validation_error"
    status_code: int = status.HTTP_422_UNPROCESSABLE_ENTITY


@dataclass(eq=False)
class TransientError(BillingError):
    """Network failure or 5xx from the billing platform."""

    code: str = "billing_transient_error"
    status_code: int = status.HTTP_502_BAD_GATEWAY

    retryable: ClassVar[bool] = True


@dataclass(eq=False)
class FxRateUnavailable(BillingError):
    """An exchange rate needed for gross pricing could not be obtained."""

    code: str = "fx_rate_unavailable"
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE

    retryable: ClassVar[bool] = True


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` when a job failing with ``exc`` may be re-run."""

    if isinstance(exc, BillingError):
        return exc.retryable
    # Malformed payloads and rejected state transitions fail the same way on every attempt.
    if isinstance(exc, ValueError):
        return False
    return True


__all__ = [
    "BillingError",
    "ConfigurationError",
    "FxRateUnavailable",
    "NotFound",
    "TransientError",
    "ValidationError",
    "is_retryable",
]
