# tests/conftest.py
import threading
import time

import pytest
from fastapi.testclient import TestClient

from doc_jobs.jobs import ConversionError, ConversionRegistry, JobService, LocalStorage, ToolSpec, UploadLimits
from doc_jobs.webapi import create_app

ADMIN_KEY = "test-admin-key"
PDF_BYTES = b"%PDF-1.4\n% tiny test document\n"


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll ``predicate`` until it returns a truthy value or fail the test."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    pytest.fail("condition not met in time")


def build_registry(gate: threading.Event) -> ConversionRegistry:
    registry = ConversionRegistry()

    @registry.tool("ok", extension="txt", media_type="text/plain", download_name="result.txt")
    def ok(ctx):
        time.sleep(0.05)
        return b"OK"

    @registry.tool("gated", extension="txt", media_type="text/plain")
    def gated(ctx):
        ctx.report_progress(40)
        ctx.report_progress(20)
        gate.wait(10)
        ctx.raise_if_cancelled()
        return b"GATED"

    @registry.tool("bad", extension="txt", media_type="text/plain")
    def bad(ctx):
        raise ConversionError("bad_input", "input is not a document")

    @registry.tool("crash", extension="txt", media_type="text/plain")
    def crash(ctx):
        raise RuntimeError("boom")

    @registry.tool("slow", extension="txt", media_type="text/plain")
    def slow(ctx):
        deadline = time.monotonic() + 5
        while not ctx.cancelled and time.monotonic() < deadline:
            time.sleep(0.01)
        return b"late"

    @registry.tool("to-file", extension="txt", media_type="text/plain")
    def to_file(ctx):
        target = ctx.workdir / "out.txt"
        target.write_bytes(b"from a file")
        return target

    registry.register(ToolSpec(name="pair", fn=lambda ctx: b"PAIR", extension="txt", min_inputs=2, max_inputs=2))
    return registry


@pytest.fixture
def gate():
    event = threading.Event()
    yield event
    event.set()


@pytest.fixture
def storage(tmp_path):
    storage = LocalStorage(tmp_path / "downloads", tmp_path / "uploads")
    storage.ensure_dirs()
    return storage


def make_service(storage, gate, **overrides) -> JobService:
    kwargs = dict(
        workers=2,
        max_queue_depth=0,
        job_timeout=None,
        retention=3600,
        reaper_interval=0,
        admin_key=ADMIN_KEY,
        upload_limits=UploadLimits(max_file_bytes=1024, max_total_bytes=2048, max_files=3),
    )
    kwargs.update(overrides)
    return JobService(storage, build_registry(gate), **kwargs)


@pytest.fixture
def service(storage, gate):
    return make_service(storage, gate)


@pytest.fixture
def client(service, gate):
    with TestClient(create_app(service)) as test_client:
        yield test_client
        gate.set()


@pytest.fixture
def admin_headers():
    return {"x-admin-key": ADMIN_KEY}


def submit(client, kind="ok", files=None, headers=None, **form):
    files = files if files is not None else [("files", ("input.pdf", PDF_BYTES, "application/pdf"))]
    return client.post("/jobs", data={"kind": kind, **form}, files=files, headers=headers)


def wait_terminal(client, job_id: str, timeout: float = 5.0) -> dict:
    def done():
        body = client.get(f"/jobs/{job_id}").json()
        return body if body["status"] in ("succeeded", "failed") else None

    return wait_for(done, timeout)
