import re
from dataclasses import dataclass
from enum import Enum


class ErrorCode(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    NOT_READY = "not_ready"
    FORBIDDEN = "forbidden"
    EXECUTION = "execution"
    INTERNAL = "internal"
    TIMEOUT = "timeout"
    QUEUE_FULL = "queue_full"
    CANCELLED = "cancelled"
    RATE_LIMITED = "rate_limited"


# Conversion functions may report their own codes (e.g. "bad_input") as long
# as they are lowercase slugs.
_CODE_RE = re.compile(r"[a-z][a-z0-9_]{0,63}")


def normalize_code(code: object) -> str:
    if isinstance(code, ErrorCode):
        return code.value
    text = str(code or "")
    if _CODE_RE.fullmatch(text):
        return text
    return ErrorCode.EXECUTION.value


@dataclass(frozen=True)
class JobError:
    """Failure description carried from a conversion to the HTTP response."""

    code: str
    message: str

    @classmethod
    def of(cls, code: object, message: str) -> "JobError":
        return cls(code=normalize_code(code), message=message)

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class ConversionError(Exception):
    """Raised (or returned) by a conversion function to fail its job."""

    def __init__(self, code: object = ErrorCode.EXECUTION, message: str = "conversion failed") -> None:
        super().__init__(message)
        self.code = normalize_code(code)
        self.message = message

    def to_job_error(self) -> JobError:
        return JobError(code=self.code, message=self.message)


class InvalidTransitionError(RuntimeError):
    """A job lifecycle transition that the state machine does not allow."""


class JobServiceError(Exception):
    status_code = 500
    code = ErrorCode.INTERNAL

    def __init__(self, message: str, *, headers: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.headers = headers

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message}


class ValidationError(JobServiceError):
    status_code = 400
    code = ErrorCode.VALIDATION


class JobNotFoundError(JobServiceError):
    status_code = 404
    code = ErrorCode.NOT_FOUND

    def __init__(self, message: str = "job not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotReadyError(JobServiceError):
    status_code = 400
    code = ErrorCode.NOT_READY

    def __init__(self, message: str = "job not ready", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(JobServiceError):
    status_code = 403
    code = ErrorCode.FORBIDDEN

    def __init__(self, message: str = "forbidden", **kwargs) -> None:
        super().__init__(message, **kwargs)


class QueueFullError(JobServiceError):
    status_code = 503
    code = ErrorCode.QUEUE_FULL

    def __init__(self, message: str = "job queue is full", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(JobServiceError):
    status_code = 429
    code = ErrorCode.RATE_LIMITED

    def __init__(self, message: str = "too many active jobs for this client", **kwargs) -> None:
        super().__init__(message, **kwargs)
