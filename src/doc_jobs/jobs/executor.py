import asyncio
import logging
import os
import threading
import time
from functools import partial
from pathlib import Path
from typing import Any

from .. import metrics
from .errors import ConversionError, ErrorCode, JobError, JobNotFoundError, QueueFullError
from .interfaces import ConversionOutput, ConversionFunction, JobContext, StorageGateway
from .registry import ConversionRegistry, ToolSpec
from .store import JobStore

logger = logging.getLogger("doc_jobs.executor")


def _coerce_result(result: Any) -> ConversionOutput | JobError:
    if isinstance(result, ConversionError):
        return result.to_job_error()
    if isinstance(result, JobError):
        return result
    if isinstance(result, ConversionOutput):
        output = result
    elif isinstance(result, (bytes, bytearray, memoryview)):
        output = ConversionOutput(data=bytes(result))
    elif isinstance(result, os.PathLike):
        output = ConversionOutput(path=Path(result))
    else:
        return JobError(ErrorCode.INTERNAL.value, f"conversion returned unsupported {type(result).__name__}")
    if output.path is not None and not output.path.is_file():
        return JobError(ErrorCode.INTERNAL.value, "conversion output file is missing")
    return output


def _invoke(fn: ConversionFunction, ctx: JobContext) -> ConversionOutput | JobError:
    # Runs in a worker thread. Nothing raised by the conversion may escape.
    try:
        result = fn(ctx)
    except ConversionError as e:
        return e.to_job_error()
    except Exception as e:
        logger.exception("Conversion crashed job_id=%s kind=%s", ctx.job_id, ctx.kind)
        return JobError(ErrorCode.INTERNAL.value, f"conversion crashed ({type(e).__name__})")
    return _coerce_result(result)


class WorkerPool:
    """Fixed number of worker slots pulling job ids from a FIFO queue.

    Each slot claims a job (queued -> running), runs its conversion in a
    thread, writes the artifact and finalizes the record. The blocking
    conversion holds the slot for its whole duration, so at most ``workers``
    jobs are ever running.
    """

    def __init__(
        self,
        store: JobStore,
        storage: StorageGateway,
        registry: ConversionRegistry,
        *,
        workers: int = 2,
        max_queue_depth: int = 0,
        job_timeout: float | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._store = store
        self._storage = storage
        self._registry = registry
        self._workers = workers
        self._max_queue_depth = max(0, max_queue_depth)
        self._job_timeout = job_timeout if job_timeout and job_timeout > 0 else None
        self._queue: asyncio.Queue[str] | None = None
        self._tasks: list[asyncio.Task] = []
        self._pending: set[str] = set()
        self._cancel_events: dict[str, threading.Event] = {}
        self._busy = 0
        self._totals = {"submitted": 0, "succeeded": 0, "failed": 0}

    @property
    def workers(self) -> int:
        return self._workers

    @property
    def started(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue(maxsize=self._max_queue_depth)
        for i in range(self._workers):
            task = asyncio.create_task(self._worker_loop(f"worker-{i+1}"))
            self._tasks.append(task)
        logger.info("Worker pool started workers=%d max_queue_depth=%d job_timeout=%s",
                    self._workers, self._max_queue_depth, self._job_timeout)

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Worker pool stopped")

    def has_capacity(self) -> bool:
        if self._queue is None:
            return False
        return not self._queue.full()

    def enqueue(self, job_id: str) -> None:
        """Hand a queued job to the pool. Must be called on the event loop thread."""
        if self._queue is None:
            raise RuntimeError("worker pool not started")
        try:
            self._queue.put_nowait(job_id)
        except asyncio.QueueFull:
            raise QueueFullError(headers={"Retry-After": "5"}) from None
        self._pending.add(job_id)
        self._totals["submitted"] += 1
        metrics.queue_depth.set(self._queue.qsize())

    def is_pending(self, job_id: str) -> bool:
        return job_id in self._pending

    def signal_cancel(self, job_id: str) -> bool:
        event = self._cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        return True

    def stats(self) -> dict[str, Any]:
        depth = self._queue.qsize() if self._queue is not None else 0
        return {
            "queueDepth": depth,
            "maxQueueDepth": self._max_queue_depth or None,
            "inFlight": self._busy,
            "workers": self._workers,
            "utilization": round(self._busy / self._workers, 4),
            "totals": dict(self._totals),
        }

    def report_progress(self, job_id: str, percent: float) -> None:
        try:
            self._store.update(job_id, lambda r: r.advance_progress(percent))
        except JobNotFoundError:
            pass

    async def _worker_loop(self, name: str) -> None:
        assert self._queue is not None
        while True:
            job_id = await self._queue.get()
            self._busy += 1
            metrics.in_flight.set(self._busy)
            metrics.queue_depth.set(self._queue.qsize())
            try:
                await self._run_job(job_id, name)
            except asyncio.CancelledError:
                self._fail_unfinished(job_id, JobError(ErrorCode.INTERNAL.value, "service shutting down"))
                raise
            except Exception:
                logger.exception("Worker %s failed handling job_id=%s", name, job_id)
                self._fail_unfinished(job_id, JobError(ErrorCode.INTERNAL.value, "internal error"))
            finally:
                self._pending.discard(job_id)
                self._busy -= 1
                metrics.in_flight.set(self._busy)
                self._queue.task_done()

    async def _run_job(self, job_id: str, worker: str) -> None:
        try:
            record, _ = self._store.update(job_id, lambda r: r.mark_running())
        except JobNotFoundError:
            logger.info("Skipping job_id=%s: record no longer exists", job_id)
            return

        logger.info("Worker %s claimed job_id=%s kind=%s", worker, job_id, record.kind)
        cancel_event = threading.Event()
        if record.cancel_requested:
            cancel_event.set()
        self._cancel_events[job_id] = cancel_event
        start = time.perf_counter()
        tool = self._registry.find(record.kind)
        try:
            if cancel_event.is_set():
                outcome: ConversionOutput | JobError = JobError(ErrorCode.CANCELLED.value, "job cancelled")
            elif tool is None:
                outcome = JobError(ErrorCode.INTERNAL.value, f"no tool registered for {record.kind!r}")
            else:
                ctx = JobContext(
                    job_id=job_id,
                    kind=record.kind,
                    options=dict(record.options),
                    inputs=[Path(p) for p in record.inputs],
                    workdir=await asyncio.to_thread(self._storage.workdir, job_id),
                    progress_callback=partial(self.report_progress, job_id),
                    cancel_event=cancel_event,
                )
                outcome = await self._execute(tool, ctx)
                if isinstance(outcome, ConversionOutput) and cancel_event.is_set():
                    outcome = JobError(ErrorCode.CANCELLED.value, "job cancelled")

            if isinstance(outcome, ConversionOutput):
                assert tool is not None
                try:
                    path = await asyncio.to_thread(self._storage.write_artifact, job_id, tool.extension, outcome)
                except OSError:
                    logger.exception("Could not persist artifact job_id=%s", job_id)
                    outcome = JobError(ErrorCode.INTERNAL.value, "could not store conversion output")
                else:
                    self._finish_success(job_id, record.kind, path, time.perf_counter() - start)
                    return
            self._finish_failure(job_id, record.kind, outcome, time.perf_counter() - start)
        finally:
            self._cancel_events.pop(job_id, None)
            await asyncio.to_thread(self._storage.discard_job_files, job_id)

    async def _execute(self, tool: ToolSpec, ctx: JobContext) -> ConversionOutput | JobError:
        call = asyncio.to_thread(_invoke, tool.fn, ctx)
        if self._job_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, self._job_timeout)
        except asyncio.TimeoutError:
            # The thread cannot be killed; ask it to stop and drop its result.
            ctx.cancel_event.set()
            return JobError(ErrorCode.TIMEOUT.value, f"job exceeded {self._job_timeout:g}s time limit")

    def _finish_success(self, job_id: str, kind: str, path: Path, elapsed: float) -> None:
        try:
            self._store.update(job_id, lambda r: r.mark_succeeded(str(path)))
        except JobNotFoundError:
            self._storage.delete_artifact(path)
            logger.warning("Job job_id=%s vanished before completion; artifact discarded", job_id)
            return
        self._totals["succeeded"] += 1
        metrics.jobs_succeeded.labels(kind=kind).inc()
        metrics.jobs_processing_seconds.labels(kind=kind).observe(elapsed)
        logger.info("job_id=%s processed successfully in %.2f seconds.", job_id, elapsed)

    def _finish_failure(self, job_id: str, kind: str, error: JobError, elapsed: float) -> None:
        try:
            self._store.update(job_id, lambda r: r.mark_failed(error))
        except JobNotFoundError:
            logger.warning("Job job_id=%s vanished before completion", job_id)
            return
        self._totals["failed"] += 1
        metrics.jobs_failed.labels(kind=kind, code=error.code).inc()
        metrics.jobs_processing_seconds.labels(kind=kind).observe(elapsed)
        logger.warning("Job job_id=%s failed code=%s after %.2f seconds: %s", job_id, error.code, elapsed, error.message)

    def _fail_unfinished(self, job_id: str, error: JobError) -> None:
        def mutate(r):
            if r.is_terminal:
                return False
            if r.started_at is None:
                r.mark_running()
            r.mark_failed(error)
            return True

        try:
            _, changed = self._store.update(job_id, mutate)
        except JobNotFoundError:
            return
        except Exception:
            logger.exception("Could not record failure for job_id=%s", job_id)
            return
        if changed:
            self._totals["failed"] += 1
