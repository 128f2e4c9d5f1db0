"""
Custom Exception Hierarchy
Distinct error kinds for the ingestion pipeline so callers can pick a retry policy per kind
"""

from enum import Enum
from typing import Optional


class KillfeedException(Exception):
    """Base exception for the killfeed pipeline"""
    pass


class TransportErrorKind(Enum):
    UNREACHABLE = "unreachable"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"


class TransportException(KillfeedException):
    """Remote file transport failure"""

    def __init__(self, kind: TransportErrorKind, message: str = "", path: Optional[str] = None):
        self.kind = kind
        self.path = path
        super().__init__(message or kind.value)

    @property
    def retryable(self) -> bool:
        # A missing file will not appear by retrying the same read
        return self.kind is not TransportErrorKind.NOT_FOUND


class ParseError(KillfeedException):
    """A single log line could not be turned into a record"""

    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"{reason}: {line[:120]!r}")


class RotationDetected(KillfeedException):
    """Remote file shrank below the stored cursor offset"""

    def __init__(self, file_id: str, previous_offset: int, current_size: int):
        self.file_id = file_id
        self.previous_offset = previous_offset
        self.current_size = current_size
        super().__init__(
            f"{file_id} rotated: cursor at {previous_offset} but file is {current_size} bytes"
        )


class PersistenceException(KillfeedException):
    """Database write or read failed"""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"{operation} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ValidationException(KillfeedException):
    """Input validation exceptions"""
    pass


class ConfigurationException(KillfeedException):
    """Configuration-related exceptions"""
    pass
