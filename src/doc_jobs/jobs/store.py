import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import JobNotFoundError
from .models import JobRecord, JobStatus

T = TypeVar("T")


@dataclass
class _Lease:
    count: int = 0
    last_acquired: float = 0.0


class JobStore:
    """In-memory, thread-safe table of job records.

    A single coarse lock guards the map. Every read hands out a copy, so the
    only way to change a stored record is ``update``, which applies the mutator
    to a working copy and commits it only if the mutator returns normally.

    The store also counts download leases. A leased record cannot be removed
    through ``remove_if_unleased``, which is the only removal path the reaper
    uses. Leases older than ``lease_timeout`` seconds are treated as abandoned.
    """

    def __init__(self, *, lease_timeout: float = 900.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, JobRecord] = {}
        self._leases: dict[str, _Lease] = {}
        self._lease_timeout = lease_timeout
        self._clock = clock

    def put(self, record: JobRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"duplicate job id {record.id}")
            self._records[record.id] = record.copy()

    def get(self, job_id: str) -> JobRecord:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                raise JobNotFoundError()
            return record.copy()

    def find(self, job_id: str) -> JobRecord | None:
        with self._lock:
            record = self._records.get(job_id)
            return record.copy() if record is not None else None

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def update(self, job_id: str, mutator: Callable[[JobRecord], T]) -> tuple[JobRecord, T]:
        """Apply ``mutator`` atomically; returns the committed copy and the mutator's result."""
        with self._lock:
            current = self._records.get(job_id)
            if current is None:
                raise JobNotFoundError()
            working = current.copy()
            result = mutator(working)
            self._records[job_id] = working
            return working.copy(), result

    def delete(self, job_id: str) -> bool:
        with self._lock:
            self._leases.pop(job_id, None)
            return self._records.pop(job_id, None) is not None

    def list_all(self) -> list[JobRecord]:
        with self._lock:
            return [r.copy() for r in self._records.values()]

    def count_by_status(self) -> dict[str, int]:
        with self._lock:
            counts = Counter(r.status.value for r in self._records.values())
        return {s.value: counts.get(s.value, 0) for s in JobStatus}

    def count_active(self, client_key: str) -> int:
        """Queued and running jobs submitted under ``client_key``."""
        with self._lock:
            return sum(1 for r in self._records.values() if r.client_key == client_key and not r.is_terminal)

    # Download leases

    def acquire_lease(self, job_id: str) -> JobRecord:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                raise JobNotFoundError()
            lease = self._leases.setdefault(job_id, _Lease())
            lease.count += 1
            lease.last_acquired = self._clock()
            return record.copy()

    def release_lease(self, job_id: str) -> None:
        with self._lock:
            lease = self._leases.get(job_id)
            if lease is None:
                return
            lease.count -= 1
            if lease.count <= 0:
                del self._leases[job_id]

    def is_leased(self, job_id: str) -> bool:
        with self._lock:
            return self._is_leased_locked(job_id)

    def _is_leased_locked(self, job_id: str) -> bool:
        lease = self._leases.get(job_id)
        if lease is None or lease.count <= 0:
            return False
        if self._clock() - lease.last_acquired > self._lease_timeout:
            return False
        return True

    def remove_if_unleased(self, job_id: str, predicate: Callable[[JobRecord], bool]) -> JobRecord | None:
        """Remove and return the record if it is unleased and ``predicate`` holds."""
        with self._lock:
            record = self._records.get(job_id)
            if record is None or self._is_leased_locked(job_id):
                return None
            if not predicate(record):
                return None
            del self._records[job_id]
            self._leases.pop(job_id, None)
            return record
