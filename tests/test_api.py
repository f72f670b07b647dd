import logging
import time

import pytest
from fastapi.testclient import TestClient

from conftest import PDF_BYTES, make_service, submit, wait_for, wait_terminal
from doc_jobs.webapi import create_app


def running_count(client, admin_headers):
    return client.get("/admin/jobs/metrics", headers=admin_headers).json()["running"]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_submit_returns_202_with_location(client):
    r = submit(client)
    assert r.status_code == 202
    body = r.json()
    assert body["status"] == "queued"
    assert r.headers["location"] == f"/jobs/{body['jobId']}"
    assert body["links"]["download"] == f"/jobs/download/{body['jobId']}"


def test_successful_job_can_be_downloaded(client):
    job_id = submit(client).json()["jobId"]

    final = wait_terminal(client, job_id)
    assert final["status"] == "succeeded"
    assert final["progress"] == 100
    assert final["error"] is None
    assert final["downloadUrl"] == f"/jobs/download/{job_id}"
    assert final["createdAt"] <= final["startedAt"] <= final["finishedAt"]

    r = client.get(f"/jobs/download/{job_id}")
    assert r.status_code == 200
    assert r.content == b"OK"
    assert r.headers["content-type"].startswith("text/plain")
    assert 'filename="result.txt"' in r.headers["content-disposition"]
    assert r.headers["content-disposition"].startswith("attachment")


def test_download_name_is_sanitized(client):
    job_id = submit(client, filename="../../my report.txt").json()["jobId"]
    wait_terminal(client, job_id)
    r = client.get(f"/jobs/download/{job_id}")
    assert 'filename="my_report.txt"' in r.headers["content-disposition"]


def test_file_output_is_stored_and_staging_is_discarded(client, service):
    job_id = submit(client, kind="to-file").json()["jobId"]
    assert wait_terminal(client, job_id)["status"] == "succeeded"
    assert client.get(f"/jobs/download/{job_id}").content == b"from a file"
    wait_for(lambda: not service.storage.staging_dir(job_id).exists())


def test_submission_does_not_wait_for_conversion(client, gate):
    started = time.monotonic()
    r = submit(client, kind="gated")
    assert r.status_code == 202
    assert time.monotonic() - started < 2

    job_id = r.json()["jobId"]
    body = client.get(f"/jobs/{job_id}").json()
    assert body["status"] in ("queued", "running")
    assert body["downloadUrl"] is None

    gate.set()
    assert wait_terminal(client, job_id)["status"] == "succeeded"


def test_progress_never_decreases(client, gate):
    job_id = submit(client, kind="gated").json()["jobId"]
    wait_for(lambda: client.get(f"/jobs/{job_id}").json()["progress"] == 40)
    time.sleep(0.05)
    assert client.get(f"/jobs/{job_id}").json()["progress"] == 40


def test_download_before_success_is_not_ready(client, gate):
    job_id = submit(client, kind="gated").json()["jobId"]
    r = client.get(f"/jobs/download/{job_id}")
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "not_ready"


def test_unknown_job_is_404(client):
    for r in (
        client.get("/jobs/does-not-exist"),
        client.get("/jobs/download/does-not-exist"),
        client.post("/jobs/does-not-exist/cancel"),
    ):
        assert r.status_code == 404
        assert r.json()["detail"]["code"] == "not_found"


def test_conversion_error_fails_job_with_its_code(client):
    job_id = submit(client, kind="bad").json()["jobId"]
    final = wait_terminal(client, job_id)
    assert final["status"] == "failed"
    assert final["error"] == {"code": "bad_input", "message": "input is not a document"}
    assert final["downloadUrl"] is None

    r = client.get(f"/jobs/download/{job_id}")
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "not_ready"


def test_crashing_conversion_fails_job_as_internal(client):
    job_id = submit(client, kind="crash").json()["jobId"]
    final = wait_terminal(client, job_id)
    assert final["status"] == "failed"
    assert final["error"]["code"] == "internal"
    # the service keeps working afterwards
    ok_id = submit(client).json()["jobId"]
    assert wait_terminal(client, ok_id)["status"] == "succeeded"


@pytest.mark.parametrize(
    "form,files",
    [
        ({"kind": "nope"}, None),
        ({"kind": "ok", "options": "{not json"}, None),
        ({"kind": "ok", "options": "[1, 2]"}, None),
        ({"kind": "pair"}, None),
        ({"kind": "ok"}, []),
        ({}, None),
    ],
)
def test_invalid_submissions_are_rejected(client, service, form, files):
    data = dict(form)
    kind = data.pop("kind", None)
    if kind is None:
        r = client.post("/jobs", files=[("files", ("input.pdf", PDF_BYTES, "application/pdf"))])
    else:
        r = submit(client, kind=kind, files=files, **data)
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "validation"
    assert len(service.store) == 0


def test_oversized_upload_is_rejected(client, service):
    r = submit(client, files=[("files", ("big.pdf", PDF_BYTES + b"x" * 2000, "application/pdf"))])
    assert r.status_code == 400
    assert "max file size" in r.json()["detail"]["message"]
    assert len(service.store) == 0
    assert list(service.storage.staging_entries()) == []


def test_fake_pdf_is_rejected(client):
    r = submit(client, files=[("files", ("a.pdf", b"hello", "application/pdf"))])
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "validation"


def test_tampered_output_path_is_forbidden_and_logged(client, service, caplog):
    job_id = submit(client).json()["jobId"]
    wait_terminal(client, job_id)

    def tamper(record):
        record.output_path = "/etc/passwd"

    service.store.update(job_id, tamper)
    caplog.set_level(logging.WARNING, logger="doc_jobs.security")

    r = client.get(f"/jobs/download/{job_id}")
    assert r.status_code == 403
    assert r.json()["detail"]["code"] == "forbidden"
    assert any(rec.name == "doc_jobs.security" for rec in caplog.records)
    assert client.get(f"/jobs/{job_id}").json()["downloadUrl"] is None
    assert not service.store.is_leased(job_id)


def test_admin_endpoints_require_key(client, admin_headers):
    for method, path in (("GET", "/admin/jobs/metrics"), ("POST", "/admin/jobs/cleanup")):
        assert client.request(method, path).status_code == 403
        assert client.request(method, path, headers={"x-admin-key": "wrong"}).status_code == 403
        assert client.request(method, path, headers=admin_headers).status_code == 200


def test_admin_disabled_without_configured_key(storage, gate, admin_headers):
    service = make_service(storage, gate, admin_key=None)
    with TestClient(create_app(service)) as c:
        r = c.get("/admin/jobs/metrics", headers=admin_headers)
        assert r.status_code == 403
        assert r.json()["detail"]["code"] == "forbidden"
        assert c.post("/admin/jobs/cleanup", headers={"x-admin-key": ""}).status_code == 403


def test_metrics_shape(client, admin_headers):
    job_id = submit(client).json()["jobId"]
    wait_terminal(client, job_id)
    m = client.get("/admin/jobs/metrics", headers=admin_headers).json()
    for key in ("queued", "running", "succeeded", "failed", "queueDepth", "inFlight", "workers", "utilization", "totals"):
        assert key in m
    assert m["succeeded"] == 1
    assert m["workers"] == 2
    assert m["totals"]["submitted"] == 1


def test_at_most_n_jobs_run_concurrently(client, gate, admin_headers):
    ids = [submit(client, kind="gated").json()["jobId"] for _ in range(4)]
    wait_for(lambda: running_count(client, admin_headers) == 2)
    time.sleep(0.1)

    m = client.get("/admin/jobs/metrics", headers=admin_headers).json()
    assert m["running"] == 2
    assert m["queued"] == 2
    assert m["inFlight"] == 2
    assert m["utilization"] == 1.0

    gate.set()
    for job_id in ids:
        assert wait_terminal(client, job_id)["status"] == "succeeded"


def test_job_timeout_fails_with_timeout_code(storage, gate):
    service = make_service(storage, gate, job_timeout=0.2)
    with TestClient(create_app(service)) as c:
        job_id = submit(c, kind="slow").json()["jobId"]
        final = wait_terminal(c, job_id)
        assert final["status"] == "failed"
        assert final["error"]["code"] == "timeout"


def test_full_queue_is_rejected_with_retry_after(storage, gate, admin_headers):
    service = make_service(storage, gate, workers=1, max_queue_depth=1)
    with TestClient(create_app(service)) as c:
        first = submit(c, kind="gated").json()["jobId"]
        wait_for(lambda: running_count(c, admin_headers) == 1)
        assert submit(c, kind="gated").status_code == 202

        r = submit(c, kind="gated")
        assert r.status_code == 503
        assert r.json()["detail"]["code"] == "queue_full"
        assert r.headers["retry-after"] == "5"
        assert len(service.store) == 2

        gate.set()
        assert wait_terminal(c, first)["status"] == "succeeded"


def test_per_client_cap_rejects_with_retry_after(storage, gate, admin_headers):
    service = make_service(storage, gate, workers=1, max_per_client=1)
    alice = {"X-API-Key": "alice"}
    with TestClient(create_app(service)) as c:
        first = submit(c, kind="gated", headers=alice).json()["jobId"]
        wait_for(lambda: running_count(c, admin_headers) == 1)

        r = submit(c, headers=alice)
        assert r.status_code == 429
        assert r.json()["detail"]["code"] == "rate_limited"
        assert r.headers["retry-after"] == "5"

        other = submit(c, headers={"X-API-Key": "bob"})
        assert other.status_code == 202
        anonymous = submit(c)
        assert anonymous.status_code == 202
        assert submit(c).status_code == 429
        assert len(service.store) == 3

        gate.set()
        assert wait_terminal(c, first)["status"] == "succeeded"
        for job_id in (other.json()["jobId"], anonymous.json()["jobId"]):
            assert wait_terminal(c, job_id)["status"] == "succeeded"
        assert submit(c, headers=alice).status_code == 202


def test_submission_is_protected_from_a_concurrent_sweep(storage, gate, monkeypatch, tmp_path):
    service = make_service(storage, gate, retention=0)
    source = tmp_path / "doc.pdf"
    source.write_bytes(PDF_BYTES)
    enqueue = service.pool.enqueue

    def sweep_then_enqueue(job_id):
        assert service.reaper.sweep().removed_jobs == 0
        enqueue(job_id)

    monkeypatch.setattr(service.pool, "enqueue", sweep_then_enqueue)
    with TestClient(create_app(service)) as c:
        record = c.portal.call(service.submit, "ok", {}, [str(source)])
        assert record.id in service.store
        assert wait_terminal(c, record.id)["status"] == "succeeded"


def test_cancel_queued_and_running_jobs(storage, gate, admin_headers):
    service = make_service(storage, gate, workers=1)
    with TestClient(create_app(service)) as c:
        running = submit(c, kind="gated").json()["jobId"]
        wait_for(lambda: running_count(c, admin_headers) == 1)
        queued = submit(c, kind="ok").json()["jobId"]

        assert c.post(f"/jobs/{queued}/cancel").status_code == 202
        assert c.post(f"/jobs/{running}/cancel").status_code == 202
        gate.set()

        for job_id in (running, queued):
            final = wait_terminal(c, job_id)
            assert final["status"] == "failed"
            assert final["error"]["code"] == "cancelled"


def test_cancel_after_completion_is_a_no_op(client):
    job_id = submit(client).json()["jobId"]
    wait_terminal(client, job_id)
    r = client.post(f"/jobs/{job_id}/cancel")
    assert r.status_code == 202
    assert r.json()["status"] == "succeeded"


def test_forced_cleanup_removes_expired_jobs(storage, gate, admin_headers):
    service = make_service(storage, gate, retention=0)
    with TestClient(create_app(service)) as c:
        job_id = submit(c).json()["jobId"]
        wait_terminal(c, job_id)

        r = c.post("/admin/jobs/cleanup", headers=admin_headers)
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True
        assert body["ran"] is True
        assert body["removedJobs"] == 1

        assert c.get(f"/jobs/{job_id}").status_code == 404
        assert c.get(f"/jobs/download/{job_id}").status_code == 404
        again = c.post("/admin/jobs/cleanup", headers=admin_headers).json()
        assert again["removedJobs"] == 0
        assert c.get("/admin/jobs/metrics", headers=admin_headers).json()["lastCleanup"] is not None


def test_open_download_defers_reaping(storage, gate):
    service = make_service(storage, gate, retention=0)
    with TestClient(create_app(service)) as c:
        job_id = submit(c).json()["jobId"]
        wait_terminal(c, job_id)

        download = service.open_download(job_id)
        report = service.reaper.sweep()
        assert report.deferred == 1
        assert download.path.exists()

        download.release()
        download.release()
        assert service.reaper.sweep().removed_jobs == 1
        assert not download.path.exists()


def test_missing_artifact_is_404_and_hidden_from_status(client, service):
    job_id = submit(client).json()["jobId"]
    wait_terminal(client, job_id)
    service.storage.artifact_path(job_id, "txt").unlink()

    assert client.get(f"/jobs/{job_id}").json()["downloadUrl"] is None
    r = client.get(f"/jobs/download/{job_id}")
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "not_found"


def test_prometheus_metrics_exposed(client):
    submit(client)
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "doc_jobs_created_total" in r.text


def test_reaper_tick_expires_artifacts_with_zero_retention(storage, gate):
    service = make_service(storage, gate, retention=0, reaper_interval=0.05)
    with TestClient(create_app(service)) as c:
        job_id = submit(c).json()["jobId"]
        artifact = storage.artifact_path(job_id, "txt")
        wait_for(lambda: c.get(f"/jobs/{job_id}").status_code == 404)
        assert not artifact.exists()
        r = c.get(f"/jobs/download/{job_id}")
        assert r.status_code == 404
        assert r.json()["detail"]["code"] == "not_found"
