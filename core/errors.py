"""
Error taxonomy for dispatch processing.

Every failure carries the HTTP-like status recorded in the Dispatch Result
and an optional code. Retry classification is driven by those two values:

  ConfigurationError     required endpoint/identifier missing   (policy)
  TransportTimeout       downstream exceeded its time budget    retryable
  TransportFailure       connection reset / refused             retryable
  ApplicationFailure     downstream reported ok=false           >=500/429 retryable,
                                                                 other 4xx terminal
  SerializationError     malformed job body                     terminal
"""
from __future__ import annotations

from typing import Any, Optional

TIMEOUT_CODE = "TimeoutError"
CONNECTION_RESET_CODE = "ECONNRESET"
CONFIG_ERROR_CODE = "ConfigError"
SERIALIZATION_ERROR_CODE = "SerializationError"

_RETRYABLE_CODES = {TIMEOUT_CODE, CONNECTION_RESET_CODE}


class DispatchError(Exception):
    """Base class for failures while dispatching a job downstream."""

    default_status = 500
    default_code: Optional[str] = None

    def __init__(self, message: str, http_status: int = None, code: str = None):
        super().__init__(message)
        self.message = message
        self.http_status = self.default_status if http_status is None else http_status
        self.code = code if code is not None else self.default_code

    def to_detail(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code}


class ConfigurationError(DispatchError):
    default_status = 500
    default_code = CONFIG_ERROR_CODE


class TransportTimeout(DispatchError):
    default_status = 504
    default_code = TIMEOUT_CODE


class TransportFailure(DispatchError):
    default_status = 502
    default_code = CONNECTION_RESET_CODE


class ApplicationFailure(DispatchError):
    """The downstream answered but reported a failure."""


class SerializationError(DispatchError):
    default_status = 400
    default_code = SERIALIZATION_ERROR_CODE


class StoreWriteError(Exception):
    """The Result Store rejected a write. Fatal for the message being processed."""


def is_retryable(status: int, code: Optional[str] = None) -> bool:
    """Return True when a failure should be redelivered by the queue."""
    if status >= 500:
        return True
    if status == 429:
        return True
    if code in _RETRYABLE_CODES:
        return True
    return False


def classify_failure(error: DispatchError, retry_on_config_error: bool = False) -> bool:
    """Retry decision for a concrete error, honouring the configuration-error policy."""
    if isinstance(error, ConfigurationError):
        return retry_on_config_error
    if isinstance(error, SerializationError):
        return False
    return is_retryable(error.http_status, error.code)


_ERRORS_BY_CODE: dict[str, type[DispatchError]] = {
    CONFIG_ERROR_CODE: ConfigurationError,
    TIMEOUT_CODE: TransportTimeout,
    CONNECTION_RESET_CODE: TransportFailure,
    SERIALIZATION_ERROR_CODE: SerializationError,
}


def error_from_detail(detail: Optional[dict[str, Any]], http_status: int) -> DispatchError:
    """Rebuild a typed error from a recorded ``{"message", "code"}`` detail."""
    detail = detail or {}
    code = detail.get("code")
    error_cls = _ERRORS_BY_CODE.get(code, ApplicationFailure)
    return error_cls(detail.get("message") or f"HTTP {http_status}",
                     http_status=http_status, code=code)
