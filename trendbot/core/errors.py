"""Error taxonomy shared by the scheduler and the trend pipeline."""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Codes recorded on failed executions and in pipeline stats."""
    CONFIG_MISSING = "CONFIG_MISSING"
    TIMEOUT = "TIMEOUT"
    TRANSIENT_IO = "TRANSIENT_IO"
    VALIDATION = "VALIDATION"
    DUPLICATE_NOOP = "DUPLICATE_NOOP"
    INVOCATION_ERROR = "INVOCATION_ERROR"


class TrendbotError(Exception):
    """Base error carrying an :class:`ErrorCode`."""

    code: ErrorCode = ErrorCode.INVOCATION_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code.value}: {super().__str__()}"


class ConfigMissingError(TrendbotError):
    """A required secret or setting is absent; the operation must not proceed."""
    code = ErrorCode.CONFIG_MISSING


class InvocationTimeoutError(TrendbotError):
    """An invocation exceeded its deadline."""
    code = ErrorCode.TIMEOUT


class TransientIOError(TrendbotError):
    """Network or storage hiccup that is worth retrying."""
    code = ErrorCode.TRANSIENT_IO


class EvidenceValidationError(TrendbotError):
    """A single evidence item is malformed."""
    code = ErrorCode.VALIDATION


class CadenceError(TrendbotError, ValueError):
    """A job cadence expression cannot be parsed."""
    code = ErrorCode.VALIDATION
