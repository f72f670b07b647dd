import os
from dataclasses import dataclass
from pathlib import Path


def env_bool(key: str, default: bool = False) -> bool:
    return os.getenv(key, str(default)).lower() in {"1", "true", "yes", "on"}


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    return int(raw) if raw else default


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    output_dir: Path = Path("./data/downloads")
    upload_dir: Path = Path("./data/uploads")
    admin_key: str | None = None
    workers: int = 2
    max_queue_depth: int = 0
    max_per_client: int = 0
    job_timeout_sec: float = 300.0
    retention_sec: float = 3600.0
    reaper_interval_sec: float = 60.0
    lease_timeout_sec: float = 900.0
    max_file_bytes: int = 30 * 1024 * 1024
    max_total_bytes: int = 120 * 1024 * 1024
    max_files: int = 10
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            output_dir=Path(os.getenv("OUTPUT_DIR", "./data/downloads")).resolve(),
            upload_dir=Path(os.getenv("UPLOAD_DIR", "./data/uploads")).resolve(),
            admin_key=os.getenv("ADMIN_API_KEY") or None,
            workers=_env_int("WORKERS", 2),
            max_queue_depth=_env_int("QUEUE_MAX_DEPTH", 0),
            max_per_client=_env_int("QUEUE_MAX_PER_CLIENT", 0),
            job_timeout_sec=_env_float("JOB_TIMEOUT_SEC", 300.0),
            retention_sec=_env_float("JOB_RETENTION_SEC", 3600.0),
            reaper_interval_sec=_env_float("REAPER_INTERVAL_SEC", 60.0),
            lease_timeout_sec=_env_float("DOWNLOAD_LEASE_TIMEOUT_SEC", 900.0),
            max_file_bytes=_env_int("UPLOAD_MAX_FILE_SIZE", 30 * 1024 * 1024),
            max_total_bytes=_env_int("UPLOAD_MAX_TOTAL_SIZE", 120 * 1024 * 1024),
            max_files=_env_int("UPLOAD_MAX_FILES", 10),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
        )
