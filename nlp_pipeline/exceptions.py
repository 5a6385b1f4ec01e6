"""
NLP Pipeline Exception Hierarchy

Every failure the pipeline reports to its caller is a PipelineError subclass
tagged with an ErrorKind, so callers can branch on the failure class without
parsing messages.
"""
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Failure classes reported by the pipeline"""
    CONFIGURATION = "configuration"    # Invalid registration or settings, fatal at startup
    UNSUPPORTED = "unsupported"        # Language/stage not served by any backend
    INVALID_REQUEST = "invalid_request"
    INITIALIZATION = "initialization"  # Backend failed to load for a language
    PROCESSING = "processing"          # Backend failed on a document
    TIMEOUT = "timeout"                # Deadline exceeded while waiting
    SHUTDOWN = "shutdown"              # Pipeline already shut down


class PipelineError(Exception):
    """
    Base class for pipeline errors

    Attributes:
        message: Human-readable error message
        kind: ErrorKind of the failure
        backend: Name of the backend involved, if any
        language: Language of the request, if known
        original_error: Original exception if wrapped
    """

    kind = ErrorKind.PROCESSING

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        language=None,
        original_error: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.language = language
        self.original_error = original_error

    def __str__(self):
        parts = [f"{self.kind.value.upper()}: {self.message}"]
        if self.backend:
            parts.append(f"(backend: {self.backend})")
        if self.language is not None:
            parts.append(f"(language: {getattr(self.language, 'value', self.language)})")
        return " ".join(parts)


class ConfigurationError(PipelineError):
    """
    Invalid pipeline configuration, never recovered

    Examples: cyclic stage dependencies, duplicate backend registration,
    backend class not implementing the backend contract
    """
    kind = ErrorKind.CONFIGURATION


class UnsupportedLanguageOrStageError(PipelineError):
    """
    No backend can produce the requested stage for the requested language

    Raised before any backend is invoked.
    """
    kind = ErrorKind.UNSUPPORTED

    def __init__(self, message: str, backend: Optional[str] = None, language=None, stage=None):
        super().__init__(message, backend=backend, language=language)
        self.stage = stage


class InvalidRequestError(PipelineError, ValueError):
    """Malformed request (wrong types, text too long)"""
    kind = ErrorKind.INVALID_REQUEST


class BackendInitError(PipelineError):
    """
    Backend failed to initialize for a language

    Shared by every request waiting on the same initialization. The
    (backend, language) pair returns to the unloaded state so a later
    request may retry.
    """
    kind = ErrorKind.INITIALIZATION


class BackendProcessError(PipelineError):
    """
    Backend failed while processing a document

    Attributes:
        corrupted: True when the backend reports its loaded state unusable;
            the instance is then evicted instead of being kept ready
    """
    kind = ErrorKind.PROCESSING

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        language=None,
        original_error: Optional[BaseException] = None,
        corrupted: bool = False
    ):
        super().__init__(message, backend=backend, language=language, original_error=original_error)
        self.corrupted = corrupted


class PipelineTimeoutError(PipelineError, TimeoutError):
    """Request deadline exceeded while waiting for initialization or exclusivity"""
    kind = ErrorKind.TIMEOUT


class PipelineShutdownError(PipelineError):
    """Request submitted after shutdown_all()"""
    kind = ErrorKind.SHUTDOWN


class BackendNotReadyError(RuntimeError):
    """
    process() called for a language the backend has not initialized

    A programming error in the caller, never retried.
    """


def wrap_backend_error(
    error: BaseException,
    error_class=BackendProcessError,
    backend: Optional[str] = None,
    language=None
) -> PipelineError:
    """
    Wrap an arbitrary adapter exception into a pipeline error

    Errors already of error_class pass through with missing context filled in.
    """
    if isinstance(error, error_class):
        if error.backend is None:
            error.backend = backend
        if error.language is None:
            error.language = language
        return error

    return error_class(
        f"{type(error).__name__}: {error}",
        backend=backend,
        language=language,
        original_error=error
    )
