import hashlib
import hmac
import logging
import os
import shutil
from pathlib import Path
from typing import Iterator, Sequence

from .errors import ForbiddenError, ValidationError
from .interfaces import ConversionOutput, JobPaths, StorageGateway, UploadLimits, UploadReader

logger = logging.getLogger("doc_jobs.storage")

CHUNK = 1024 * 1024
PDF_MAGIC = b"%PDF-"


def job_id_for_entry(name: str) -> str:
    """Job id encoded in an output/staging entry name (``<id>.<ext>``, ``.<id>.<ext>.part``, ``<id>``)."""
    return name.lstrip(".").split(".", 1)[0]


def _safe_extension(filename: str) -> str:
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    ext = name.rsplit(".", 1)[-1].lower()
    if not ext.isalnum() or len(ext) > 8:
        return ""
    return "." + ext


def _looks_like_pdf(filename: str, content_type: str | None) -> bool:
    return filename.lower().endswith(".pdf") or (content_type or "").lower() == "application/pdf"


class LocalStorage(StorageGateway):
    """Artifacts and staged inputs on the local filesystem.

    Layout::

        <output_dir>/<job_id>.<ext>            finished artifact
        <output_dir>/.<job_id>.<ext>.part      artifact being written
        <upload_dir>/<job_id>/input-<n><ext>   staged inputs
        <upload_dir>/<job_id>/work/            conversion scratch space
    """

    def __init__(self, output_dir: str | Path, upload_dir: str | Path) -> None:
        self._output = Path(output_dir).resolve()
        self._uploads = Path(upload_dir).resolve()

    @property
    def output_dir(self) -> Path:
        return self._output

    @property
    def upload_dir(self) -> Path:
        return self._uploads

    def ensure_dirs(self) -> None:
        self._output.mkdir(parents=True, exist_ok=True)
        self._uploads.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, job_id: str, extension: str) -> Path:
        return self._output / f"{job_id}.{extension}"

    def _part_path(self, job_id: str, extension: str) -> Path:
        return self._output / f".{job_id}.{extension}.part"

    def staging_dir(self, job_id: str) -> Path:
        return self._uploads / job_id

    def workdir(self, job_id: str) -> Path:
        path = self.staging_dir(job_id) / "work"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def write_artifact(self, job_id: str, extension: str, output: ConversionOutput) -> Path:
        """Write the artifact durably: temp file, fsync, atomic rename."""
        target = self.artifact_path(job_id, extension)
        part = self._part_path(job_id, extension)
        self._output.mkdir(parents=True, exist_ok=True)
        try:
            with part.open("wb") as f_out:
                if output.data is not None:
                    f_out.write(output.data)
                else:
                    assert output.path is not None
                    with Path(output.path).open("rb") as f_in:
                        shutil.copyfileobj(f_in, f_out, CHUNK)
                f_out.flush()
                os.fsync(f_out.fileno())
            os.replace(part, target)
        except BaseException:
            part.unlink(missing_ok=True)
            raise
        self._fsync_dir(self._output)
        return target

    @staticmethod
    def _fsync_dir(path: Path) -> None:
        if os.name == "nt":
            return
        fd = os.open(path, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    def resolve_artifact(self, output_path: str) -> Path:
        """Canonicalize ``output_path`` and require it to live inside the output directory.

        Symlinks and ``..`` segments are resolved before the check, and the
        check compares path components, not string prefixes.
        """
        try:
            candidate = Path(output_path)
            if not candidate.is_absolute():
                candidate = self._output / candidate
            resolved = candidate.resolve()
        except (OSError, ValueError, RuntimeError) as e:
            raise ForbiddenError("artifact path rejected") from e
        if resolved == self._output or not resolved.is_relative_to(self._output):
            raise ForbiddenError("artifact path rejected")
        return resolved

    def delete_artifact(self, path: str | Path) -> bool:
        try:
            resolved = self.resolve_artifact(str(path))
        except ForbiddenError:
            logger.warning("Refusing to delete artifact outside output directory path=%s", path)
            return False
        try:
            resolved.unlink()
        except FileNotFoundError:
            return False
        return True

    def discard_job_files(self, job_id: str) -> bool:
        """Remove staged inputs and scratch space of a job. Idempotent."""
        staging = self.staging_dir(job_id)
        if staging.parent != self._uploads:
            return False
        try:
            shutil.rmtree(staging)
        except FileNotFoundError:
            return False
        return True

    def output_entries(self) -> Iterator[Path]:
        if not self._output.is_dir():
            return iter(())
        return (p for p in self._output.iterdir() if p.is_file())

    def staging_entries(self) -> Iterator[Path]:
        if not self._uploads.is_dir():
            return iter(())
        return (p for p in self._uploads.iterdir() if p.is_dir())

    async def stage_uploads(
        self,
        job_id: str,
        uploads: Sequence[tuple[str, str | None, UploadReader]],
        limits: UploadLimits,
    ) -> JobPaths:
        """Stream uploads into the job's staging directory, enforcing size limits.

        Any violation removes everything staged so far and raises ValidationError.
        """
        if not uploads:
            raise ValidationError("at least one input file is required")
        if len(uploads) > limits.max_files:
            raise ValidationError(f"maximum {limits.max_files} files allowed")

        staging = self.staging_dir(job_id)
        staging.mkdir(parents=True, exist_ok=True)
        inputs: list[str] = []
        total = 0
        try:
            for index, (filename, content_type, reader) in enumerate(uploads):
                target = staging / f"input-{index}{_safe_extension(filename)}"
                size = 0
                head = b""
                with target.open("wb") as f_out:
                    while True:
                        chunk = await reader(CHUNK)
                        if not chunk:
                            break
                        b = bytes(chunk)
                        size += len(b)
                        total += len(b)
                        if size > limits.max_file_bytes:
                            raise ValidationError(f"file #{index + 1} exceeds max file size")
                        if total > limits.max_total_bytes:
                            raise ValidationError("total upload size exceeds limit")
                        if len(head) < len(PDF_MAGIC):
                            head += b[: len(PDF_MAGIC) - len(head)]
                        f_out.write(b)
                if size == 0:
                    raise ValidationError(f"file #{index + 1} is empty")
                if _looks_like_pdf(filename, content_type) and head != PDF_MAGIC:
                    raise ValidationError(f"file #{index + 1} is not a valid PDF")
                inputs.append(str(target))
        except BaseException:
            self.discard_job_files(job_id)
            raise
        return JobPaths(staging_dir=str(staging), workdir=str(staging / "work"), inputs=tuple(inputs))


class AdminKeyVerifier:
    """Checks the ``x-admin-key`` header against the configured secret.

    The configured value is either a plaintext key or an argon2 PHC string
    (``$argon2id$...``). With no key configured every check fails.
    """

    def __init__(self, configured: str | None) -> None:
        configured = (configured or "").strip()
        self._configured = configured or None

    @property
    def enabled(self) -> bool:
        return self._configured is not None

    def verify(self, presented: str | None) -> bool:
        if self._configured is None or not presented:
            return False
        if self._configured.startswith("$argon2"):
            from argon2 import PasswordHasher
            from argon2.exceptions import InvalidHashError, VerificationError

            try:
                return PasswordHasher().verify(self._configured, presented)
            except (VerificationError, InvalidHashError):
                return False
        expected = hashlib.sha256(self._configured.encode("utf-8")).digest()
        calc = hashlib.sha256(presented.encode("utf-8")).digest()
        return hmac.compare_digest(calc, expected)


def hash_admin_key(key: str) -> str:
    """Return an argon2 PHC string suitable for ADMIN_API_KEY."""
    from argon2 import PasswordHasher

    return PasswordHasher().hash(key)
