import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Protocol, Union

from .errors import ConversionError, ErrorCode


@dataclass
class ConversionOutput:
    """Result of a conversion: either in-memory bytes or a file in the job workdir."""

    data: bytes | None = None
    path: Path | None = None

    def __post_init__(self) -> None:
        if (self.data is None) == (self.path is None):
            raise ValueError("ConversionOutput needs exactly one of data or path")


ConversionResult = Union[bytes, bytearray, Path, ConversionOutput, ConversionError]


@dataclass
class JobContext:
    """Everything a conversion function gets to see about its job."""

    job_id: str
    kind: str
    options: dict[str, Any]
    inputs: list[Path]
    workdir: Path
    progress_callback: Callable[[float], None] = field(repr=False, default=lambda _pct: None)
    cancel_event: threading.Event = field(repr=False, default_factory=threading.Event)

    def report_progress(self, percent: float) -> None:
        self.progress_callback(percent)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise ConversionError(ErrorCode.CANCELLED, "job cancelled")


class ConversionFunction(Protocol):
    def __call__(self, ctx: JobContext) -> ConversionResult:
        """Run one conversion synchronously.

        This is a blocking call; the worker pool runs it in a thread.
        """


UploadReader = Callable[[int], Awaitable[bytes]]


class StorageGateway(Protocol):
    def artifact_path(self, job_id: str, extension: str) -> Path:
        ...

    def workdir(self, job_id: str) -> Path:
        ...

    def write_artifact(self, job_id: str, extension: str, output: ConversionOutput) -> Path:
        ...

    def resolve_artifact(self, output_path: str) -> Path:
        ...

    def delete_artifact(self, path: str | Path) -> bool:
        ...

    def discard_job_files(self, job_id: str) -> bool:
        ...

    def output_entries(self) -> Iterator[Path]:
        ...

    def staging_entries(self) -> Iterator[Path]:
        ...


@dataclass(frozen=True)
class UploadLimits:
    max_file_bytes: int
    max_total_bytes: int
    max_files: int


@dataclass(frozen=True)
class JobPaths:
    staging_dir: str
    workdir: str
    inputs: tuple[str, ...]
