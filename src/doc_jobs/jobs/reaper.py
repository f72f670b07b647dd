import asyncio
import contextlib
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from .. import metrics
from .adapters import LocalStorage, job_id_for_entry
from .models import JobRecord, JobStatus, utcnow
from .store import JobStore

logger = logging.getLogger("doc_jobs.reaper")


@dataclass
class ReapReport:
    ran: bool
    removed_jobs: int = 0
    removed_files: int = 0
    deferred: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "ran": self.ran,
            "removedJobs": self.removed_jobs,
            "removedFiles": self.removed_files,
            "deferred": self.deferred,
        }


class TTLReaper:
    """Deletes expired jobs and their files on a fixed interval.

    A job expires once its ``finishedAt`` (``createdAt`` for a queued job the
    pool no longer holds) is at or before ``now - retention``. Running jobs
    never expire. Records pinned by a download lease are skipped and counted
    as deferred; the next sweep retries them.

    Every sweep also removes orphaned entries in the output and staging
    directories, i.e. files whose job id has no record and whose mtime is past
    the cutoff. Sweeps never overlap: a sweep requested while another is in
    progress returns ``ran=False``.
    """

    def __init__(
        self,
        store: JobStore,
        storage: LocalStorage,
        *,
        retention: float,
        interval: float = 60.0,
        protected: Callable[[str], bool] = lambda _job_id: False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._storage = storage
        self._retention = timedelta(seconds=max(0.0, retention))
        self._interval = interval
        self._protected = protected
        self._clock = clock
        self._sweep_lock = threading.Lock()
        self._task: asyncio.Task | None = None
        self._last_sweep: datetime | None = None

    @property
    def last_sweep(self) -> datetime | None:
        return self._last_sweep

    async def start(self) -> None:
        if self._task is None and self._interval > 0:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                report = await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Reaper sweep failed")
                continue
            if report.removed_jobs or report.removed_files:
                logger.info("Reaper removed jobs=%d files=%d deferred=%d",
                            report.removed_jobs, report.removed_files, report.deferred)

    def sweep(self, now: datetime | None = None) -> ReapReport:
        if not self._sweep_lock.acquire(blocking=False):
            return ReapReport(ran=False)
        try:
            report = self._sweep(now or self._clock())
        finally:
            self._sweep_lock.release()
        metrics.jobs_reaped.inc(report.removed_jobs)
        metrics.files_reaped.inc(report.removed_files)
        return report

    def _expired(self, record: JobRecord, cutoff: datetime) -> bool:
        if record.status is JobStatus.RUNNING:
            return False
        if record.status is JobStatus.QUEUED:
            if self._protected(record.id):
                return False
            return record.created_at <= cutoff
        return record.reference_time() <= cutoff

    def _sweep(self, now: datetime) -> ReapReport:
        cutoff = now - self._retention
        report = ReapReport(ran=True)
        for record in self._store.list_all():
            if not self._expired(record, cutoff):
                continue
            removed = self._store.remove_if_unleased(record.id, lambda r: self._expired(r, cutoff))
            if removed is None:
                if record.id in self._store:
                    report.deferred += 1
                continue
            report.removed_jobs += 1
            if removed.output_path and self._storage.delete_artifact(removed.output_path):
                report.removed_files += 1
            self._storage.discard_job_files(removed.id)
            logger.info("Reaped job_id=%s status=%s", removed.id, removed.status.value)

        report.removed_files += self._sweep_orphans(cutoff)
        self._last_sweep = now
        return report

    def _sweep_orphans(self, cutoff: datetime) -> int:
        cutoff_ts = cutoff.timestamp()
        removed = 0
        for entry in list(self._storage.output_entries()):
            if not self._is_orphan(job_id_for_entry(entry.name), entry, cutoff_ts):
                continue
            if self._storage.delete_artifact(entry):
                logger.info("Removed orphaned artifact name=%s", entry.name)
                removed += 1
        for entry in list(self._storage.staging_entries()):
            if not self._is_orphan(entry.name, entry, cutoff_ts):
                continue
            if self._storage.discard_job_files(entry.name):
                logger.info("Removed orphaned staging dir name=%s", entry.name)
                removed += 1
        return removed

    def _is_orphan(self, job_id: str, entry, cutoff_ts: float) -> bool:
        if job_id in self._store or self._protected(job_id):
            return False
        try:
            return entry.stat().st_mtime <= cutoff_ts
        except FileNotFoundError:
            return False
