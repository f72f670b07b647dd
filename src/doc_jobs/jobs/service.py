import asyncio
import json
import logging
import unicodedata
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Sequence

from .. import metrics
from .adapters import AdminKeyVerifier, LocalStorage
from .errors import (
    ForbiddenError,
    JobNotFoundError,
    NotReadyError,
    QueueFullError,
    RateLimitedError,
    ValidationError,
)
from .executor import WorkerPool
from .interfaces import UploadLimits, UploadReader
from .models import JobRecord, JobStatus, isoformat
from .reaper import ReapReport, TTLReaper
from .registry import ConversionRegistry
from .store import JobStore

logger = logging.getLogger("doc_jobs.service")
security_logger = logging.getLogger("doc_jobs.security")

DOWNLOAD_URL = "/jobs/download/{job_id}"


@dataclass
class Download:
    """An artifact pinned for streaming; call ``release`` when the response is done."""

    job_id: str
    path: Path
    filename: str
    media_type: str
    release: Callable[[], None]


def safe_filename(name: str | None, fallback: str, *, max_length: int = 128) -> str:
    """Reduce a job-supplied name to a plain ASCII basename safe for Content-Disposition."""
    if not name:
        return fallback
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    base = unicodedata.normalize("NFKD", base).encode("ascii", "ignore").decode("ascii")
    cleaned = "".join(c if c.isalnum() or c in "._-" else "_" for c in base)
    cleaned = cleaned.strip("._")
    while "__" in cleaned:
        cleaned = cleaned.replace("__", "_")
    if not cleaned:
        return fallback
    if len(cleaned) > max_length:
        stem, dot, ext = cleaned.rpartition(".")
        if dot and len(ext) <= 8:
            cleaned = stem[: max_length - len(ext) - 1] + "." + ext
        else:
            cleaned = cleaned[:max_length]
    return cleaned


class JobService:
    """Core domain service orchestrating conversion jobs.

    This service is framework-agnostic. It owns the job store, the worker
    pool and the reaper, and exposes the operations the HTTP layer needs:
    submission, status, download, cancellation and the admin surface.
    """

    def __init__(
        self,
        storage: LocalStorage,
        registry: ConversionRegistry,
        *,
        workers: int = 2,
        max_queue_depth: int = 0,
        max_per_client: int = 0,
        job_timeout: float | None = None,
        retention: float = 3600.0,
        reaper_interval: float = 60.0,
        lease_timeout: float = 900.0,
        admin_key: str | None = None,
        upload_limits: UploadLimits | None = None,
    ) -> None:
        self._storage = storage
        self._registry = registry
        self._store = JobStore(lease_timeout=lease_timeout)
        self._pool = WorkerPool(
            self._store,
            storage,
            registry,
            workers=workers,
            max_queue_depth=max_queue_depth,
            job_timeout=job_timeout,
        )
        self._reserved: set[str] = set()
        self._max_per_client = max_per_client
        self._reaper = TTLReaper(
            self._store,
            storage,
            retention=retention,
            interval=reaper_interval,
            protected=self._is_protected,
        )
        self._admin = AdminKeyVerifier(admin_key)
        self._limits = upload_limits or UploadLimits(
            max_file_bytes=30 * 1024 * 1024,
            max_total_bytes=120 * 1024 * 1024,
            max_files=10,
        )

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    @property
    def reaper(self) -> TTLReaper:
        return self._reaper

    @property
    def storage(self) -> LocalStorage:
        return self._storage

    @property
    def registry(self) -> ConversionRegistry:
        return self._registry

    async def start(self) -> None:
        self._storage.ensure_dirs()
        await self._pool.start()
        await self._reaper.start()
        logger.info("Job service started output_dir=%s tools=%s", self._storage.output_dir, ",".join(self._registry.names()))

    async def stop(self) -> None:
        await self._reaper.stop()
        await self._pool.stop()

    def _is_protected(self, job_id: str) -> bool:
        return job_id in self._reserved or self._pool.is_pending(job_id)

    # Submission

    def _check_client_quota(self, client_key: str | None) -> None:
        if not self._max_per_client or client_key is None:
            return
        if self._store.count_active(client_key) >= self._max_per_client:
            metrics.jobs_rejected.labels(reason="rate_limited").inc()
            logger.info("Rejected submission: client at %d active jobs", self._max_per_client)
            raise RateLimitedError(headers={"Retry-After": "5"})

    @staticmethod
    def parse_options(raw: str | None) -> dict[str, Any]:
        if raw is None or not raw.strip():
            return {}
        try:
            options = json.loads(raw)
        except ValueError:
            raise ValidationError("options must be valid JSON") from None
        if not isinstance(options, dict):
            raise ValidationError("options must be a JSON object")
        return options

    async def submit(
        self,
        kind: str,
        options: dict[str, Any] | None,
        inputs: Sequence[str | Path],
        *,
        filename: str | None = None,
        job_id: str | None = None,
        client_key: str | None = None,
    ) -> JobRecord:
        """Create a queued job for already-staged inputs and hand it to the pool.

        Returns as soon as the job is queued; never waits for the conversion.
        Raises ValidationError before any record exists when the request is
        malformed, QueueFullError when the optional queue bound is reached and
        RateLimitedError when ``client_key`` already has its share of active jobs.
        """
        options = {} if options is None else options
        try:
            tool = self._registry.validate(kind, options, len(inputs))
            try:
                json.dumps(options)
            except (TypeError, ValueError):
                raise ValidationError("options must be JSON serializable") from None
            for p in inputs:
                if not Path(p).is_file():
                    raise ValidationError("input file is missing")
        except ValidationError as e:
            metrics.jobs_rejected.labels(reason="validation").inc()
            logger.info("Rejected submission kind=%s: %s", kind, e.message)
            raise
        if not self._pool.started:
            raise RuntimeError("job service not started")
        if not self._pool.has_capacity():
            metrics.jobs_rejected.labels(reason="queue_full").inc()
            raise QueueFullError(headers={"Retry-After": "5"})
        self._check_client_quota(client_key)

        job_id = job_id or str(uuid.uuid4())
        record = JobRecord(
            id=job_id,
            kind=tool.name,
            options=options,
            inputs=[str(p) for p in inputs],
            filename=filename or tool.default_filename(job_id),
            client_key=client_key,
        )
        # Held until the id is pending in the pool so the reaper never sees a gap.
        reserved_here = job_id not in self._reserved
        self._reserved.add(job_id)
        try:
            self._store.put(record)
            try:
                self._pool.enqueue(record.id)
            except BaseException:
                self._store.delete(record.id)
                raise
        finally:
            if reserved_here:
                self._reserved.discard(job_id)
        metrics.jobs_created.labels(kind=tool.name).inc()
        logger.info("Created job_id=%s kind=%s inputs=%d", record.id, tool.name, len(inputs))
        return record

    async def create_job_from_upload(
        self,
        kind: str,
        options_raw: str | None,
        uploads: Sequence[tuple[str, str | None, UploadReader]],
        *,
        filename: str | None = None,
        client_key: str | None = None,
    ) -> JobRecord:
        """Validate the request, stage the uploads and submit the job."""
        try:
            options = self.parse_options(options_raw)
            self._registry.validate(kind, options, len(uploads))
        except ValidationError as e:
            metrics.jobs_rejected.labels(reason="validation").inc()
            logger.info("Rejected submission kind=%s: %s", kind, e.message)
            raise
        self._check_client_quota(client_key)
        job_id = str(uuid.uuid4())
        self._reserved.add(job_id)
        try:
            try:
                paths = await self._storage.stage_uploads(job_id, uploads, self._limits)
            except ValidationError as e:
                metrics.jobs_rejected.labels(reason="upload").inc()
                logger.info("Rejected upload kind=%s: %s", kind, e.message)
                raise
            try:
                return await self.submit(
                    kind,
                    options,
                    list(paths.inputs),
                    filename=filename,
                    job_id=job_id,
                    client_key=client_key,
                )
            except BaseException:
                self._storage.discard_job_files(job_id)
                raise
        finally:
            self._reserved.discard(job_id)

    # Status / download

    def status(self, job_id: str) -> dict[str, Any]:
        record = self._store.get(job_id)
        download_url = None
        if record.status is JobStatus.SUCCEEDED and self._artifact_available(record):
            download_url = DOWNLOAD_URL.format(job_id=record.id)
        return record.public_view(download_url)

    def _artifact_available(self, record: JobRecord) -> bool:
        if not record.output_path:
            return False
        try:
            return self._storage.resolve_artifact(record.output_path).is_file()
        except ForbiddenError:
            return False

    def open_download(self, job_id: str) -> Download:
        """Pin a succeeded job's artifact for streaming.

        The artifact path is re-validated against the output directory on
        every call; a record pointing elsewhere is refused and reported.
        """
        record = self._store.acquire_lease(job_id)
        released = False

        def release() -> None:
            nonlocal released
            if not released:
                released = True
                self._store.release_lease(job_id)

        try:
            if record.status is not JobStatus.SUCCEEDED or not record.output_path:
                raise NotReadyError()
            try:
                path = self._storage.resolve_artifact(record.output_path)
            except ForbiddenError:
                security_logger.warning(
                    "Path containment violation job_id=%s output_path=%r output_dir=%s",
                    job_id, record.output_path, self._storage.output_dir,
                )
                raise
            if not path.is_file():
                logger.warning("Artifact missing for job_id=%s", job_id)
                raise JobNotFoundError("artifact no longer available")
        except BaseException:
            release()
            raise

        tool = self._registry.find(record.kind)
        extension = path.suffix.lstrip(".") or "bin"
        fallback = f"{job_id}.{extension}"
        media_type = tool.media_type if tool else "application/octet-stream"
        logger.info("Serving artifact job_id=%s", job_id)
        return Download(
            job_id=job_id,
            path=path,
            filename=safe_filename(record.filename, fallback),
            media_type=media_type,
            release=release,
        )

    def cancel(self, job_id: str) -> dict[str, Any]:
        """Request cooperative cancellation. Terminal jobs are left untouched."""

        def mutate(r: JobRecord) -> bool:
            if r.is_terminal:
                return False
            r.cancel_requested = True
            return True

        _, changed = self._store.update(job_id, mutate)
        if changed:
            self._pool.signal_cancel(job_id)
            logger.info("Cancellation requested job_id=%s", job_id)
        return self.status(job_id)

    # Admin surface

    def require_admin(self, presented: str | None) -> None:
        if not self._admin.verify(presented):
            security_logger.warning("Rejected admin request (key %s)",
                                    "not configured" if not self._admin.enabled else "missing or invalid")
            raise ForbiddenError()

    def metrics(self) -> dict[str, Any]:
        counts = self._store.count_by_status()
        stats = self._pool.stats()
        last = self._reaper.last_sweep
        return {
            **counts,
            "total": sum(counts.values()),
            **stats,
            "maxPerClient": self._max_per_client or None,
            "lastCleanup": isoformat(last),
        }

    async def force_cleanup(self) -> ReapReport:
        report = await asyncio.to_thread(self._reaper.sweep)
        logger.info("Forced cleanup ran=%s removed_jobs=%d removed_files=%d deferred=%d",
                    report.ran, report.removed_jobs, report.removed_files, report.deferred)
        return report
