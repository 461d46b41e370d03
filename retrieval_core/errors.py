"""Error hierarchy for ranking and backend dispatch.

Ranking errors (malformed input) are caller bugs and are never retried.
Backend lifecycle errors follow the caller's tolerance: fail-fast callers get
them raised, fail-soft callers get ``None`` and a logged warning.
"""

from typing import Any, Dict, Optional


class RetrievalError(Exception):
    """Base exception for hybrid-recall.

    All project-specific errors inherit from this class.
    """

    error_code = "RETRIEVAL_ERROR"

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a dictionary for API responses and logs."""
        payload: Dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.backend:
            payload["backend"] = self.backend
        if self.cause is not None:
            payload["cause"] = repr(self.cause)
        return payload

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.error_code}: {self.message})"


class UnknownBackendError(RetrievalError, LookupError):
    """Backend name has no registered implementation after alias resolution."""

    error_code = "UNKNOWN_BACKEND"


class BackendConstructionError(RetrievalError):
    """Backend construction or its initialize() routine failed."""

    error_code = "BACKEND_CONSTRUCTION_FAILED"


class BackendHealthCheckError(RetrievalError):
    """Backend reported, or is known to be, unhealthy."""

    error_code = "BACKEND_UNHEALTHY"


class BackendQueryError(RetrievalError):
    """A backend call failed at call time.

    Does not mark the backend unhealthy.
    """

    error_code = "BACKEND_QUERY_FAILED"

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        cause: Optional[BaseException] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, backend=backend, cause=cause)
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        return payload


class MalformedInputError(RetrievalError, TypeError):
    """Non-text document body supplied to indexing or tokenization."""

    error_code = "MALFORMED_INPUT"
