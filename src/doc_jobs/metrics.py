"""
Prometheus metrics for the document job service
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

jobs_created = Counter(
    "doc_jobs_created_total",
    "Total conversion jobs accepted",
    ["kind"],
)

jobs_succeeded = Counter(
    "doc_jobs_succeeded_total",
    "Total conversion jobs that produced an artifact",
    ["kind"],
)

jobs_failed = Counter(
    "doc_jobs_failed_total",
    "Total conversion jobs that failed",
    ["kind", "code"],
)

jobs_rejected = Counter(
    "doc_jobs_rejected_total",
    "Total submissions rejected before a job was created",
    ["reason"],
)

jobs_processing_seconds = Histogram(
    "doc_job_processing_seconds",
    "Time spent running a conversion job in seconds",
    ["kind"],
)

jobs_reaped = Counter(
    "doc_jobs_reaped_total",
    "Total expired jobs removed by the reaper",
)

files_reaped = Counter(
    "doc_jobs_files_reaped_total",
    "Total artifact and staging files removed by the reaper",
)

queue_depth = Gauge(
    "doc_jobs_queue_depth",
    "Jobs waiting for a worker slot",
)

in_flight = Gauge(
    "doc_jobs_in_flight",
    "Jobs currently held by a worker slot",
)


def render_latest() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
