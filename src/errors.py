"""
Error Taxonomy - Classified errors for remote resource operations.

Every failure raised by a RemoteClient or the reconciliation core is mapped
onto one of a small set of kinds. The kind alone decides whether an error is
retried, drives state removal, or is surfaced to the diagnostics channel.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional, Sequence

import aiohttp

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Classification of a remote or lifecycle failure."""

    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    CONFLICT = "conflict"
    PERMANENT = "permanent"
    CANCELLED = "cancelled"


class ClassifiedError(Exception):
    """
    Base class for all classified errors.

    The underlying provider error (if any) is kept on ``cause`` so it can be
    shown to the operator unchanged.
    """

    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.TRANSIENT, ErrorKind.CONFLICT)

    def __str__(self) -> str:
        if self.cause is not None and str(self.cause) not in self.message:
            return f"{self.message}: {self.cause}"
        return self.message


class NotFoundError(ClassifiedError):
    """The remote object does not exist (or is not yet visible)."""

    kind = ErrorKind.NOT_FOUND


class TransientError(ClassifiedError):
    """Retryable failure: throttling, eventual consistency, network errors."""

    kind = ErrorKind.TRANSIENT


class ConflictError(ClassifiedError):
    """Concurrent modification of the remote object."""

    kind = ErrorKind.CONFLICT


class PermanentError(ClassifiedError):
    """Malformed request, auth/permission denial or validation error."""

    kind = ErrorKind.PERMANENT


class ReconcileCancelled(ClassifiedError):
    """The caller aborted the operation through its cancellation signal."""

    kind = ErrorKind.CANCELLED


class StabilizeTimeout(TransientError):
    """A created object did not become readable before the timeout."""

    def __init__(self, message: str, timeout: float, cause: Optional[BaseException] = None):
        self.timeout = timeout
        super().__init__(message, cause)


class RetriesExhausted(TransientError):
    """A retryable error persisted past the attempt count or time budget."""

    def __init__(self, message: str, attempts: int, last_error: ClassifiedError):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message, last_error.cause or last_error)


class MalformedInputError(PermanentError):
    """Desired state failed validation before any remote call was made."""


class ImportFormatError(PermanentError):
    """An import identifier does not match the resource's documented format."""

    def __init__(self, raw_id: str, expected: str):
        self.raw_id = raw_id
        self.expected = expected
        super().__init__(
            f"wrong format of import ID ({raw_id}), use: {expected}"
        )


class ReplacementRequired(PermanentError):
    """Immutable attributes changed; the object must be deleted and recreated."""

    def __init__(self, attributes: Sequence[str]):
        self.attributes = list(attributes)
        super().__init__(
            "in-place update not possible, replacement required for: "
            + ", ".join(self.attributes)
        )


# Errors from the transport layer that are always worth another attempt.
_TRANSIENT_EXCEPTIONS = (
    asyncio.TimeoutError,
    aiohttp.ClientConnectionError,
    aiohttp.ServerDisconnectedError,
    ConnectionError,
)


def classify(exc: BaseException) -> ClassifiedError:
    """
    Map an arbitrary exception onto the taxonomy.

    Args:
        exc: The exception raised by a remote call.

    Returns:
        A ClassifiedError; already-classified errors are returned unchanged.
    """
    if isinstance(exc, ClassifiedError):
        return exc
    if isinstance(exc, _TRANSIENT_EXCEPTIONS):
        return TransientError(f"transport error ({type(exc).__name__})", cause=exc)
    if isinstance(exc, aiohttp.ClientError):
        return TransientError(f"client error ({type(exc).__name__})", cause=exc)
    logger.debug(f"Unclassified error treated as permanent: {exc!r}")
    return PermanentError(f"unexpected error ({type(exc).__name__})", cause=exc)


def error_details(error: ClassifiedError) -> Dict[str, Any]:
    """Serializable description of an error for diagnostics and storage."""
    return {
        "kind": error.kind.value,
        "message": str(error),
        "cause": repr(error.cause) if error.cause is not None else None,
    }
