"""
Job engine for asynchronous document conversions.
Provides the job record and store, the worker pool, the TTL reaper and a
service facade tying them together, so front-ends (HTTP or others) can use
the same core logic.
"""

from .adapters import AdminKeyVerifier, LocalStorage, hash_admin_key
from .errors import (
    ConversionError,
    ErrorCode,
    ForbiddenError,
    InvalidTransitionError,
    JobError,
    JobNotFoundError,
    JobServiceError,
    NotReadyError,
    QueueFullError,
    RateLimitedError,
    ValidationError,
)
from .interfaces import ConversionOutput, JobContext, UploadLimits
from .models import JobRecord, JobStatus
from .reaper import ReapReport, TTLReaper
from .registry import ConversionRegistry, ToolSpec
from .service import Download, JobService, safe_filename
from .store import JobStore
