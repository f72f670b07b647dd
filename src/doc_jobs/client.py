"""
Small blocking client for the document job API.
"""

import json
import os
import time
from pathlib import Path
from typing import Any, Iterable

import requests

TERMINAL = {"succeeded", "failed"}
TRANSIENT_STATUS = {409, 423, 429}


class JobsApiError(Exception):
    """Non-success response from the job API, carrying the error body's code."""

    def __init__(self, status_code: int, code: str, message: str, retry_after: float | None = None) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.retry_after = retry_after

    @classmethod
    def from_response(cls, resp: Any) -> "JobsApiError":
        code, message = "unknown", resp.text
        try:
            detail = resp.json().get("detail")
        except ValueError:
            detail = None
        if isinstance(detail, dict):
            code = str(detail.get("code", code))
            message = str(detail.get("message", message))
        retry_after = resp.headers.get("Retry-After")
        return cls(resp.status_code, code, message, float(retry_after) if retry_after else None)


def _is_transient(status_code: int) -> bool:
    return status_code in TRANSIENT_STATUS or 500 <= status_code < 600


class JobsClient:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        admin_key: str | None = None,
        api_key: str | None = None,
        session: Any = None,
        timeout: float = 60.0,
        max_attempts: int = 5,
        backoff: float = 0.5,
    ) -> None:
        self.base_url = (base_url or os.getenv("API_BASE", "http://localhost:8080")).rstrip("/")
        self.admin_key = admin_key
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff = backoff

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _admin_headers(self) -> dict[str, str]:
        return {"x-admin-key": self.admin_key} if self.admin_key else {}

    def _request(self, method: str, path: str, *, retry: bool = False, **kwargs: Any) -> Any:
        backoff = self.backoff
        attempts = self.max_attempts if retry else 1
        # Every attempt but the last may retry; the last one's outcome is final.
        for _ in range(attempts - 1):
            try:
                resp = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
            except requests.RequestException:
                resp = None
            if resp is not None and not _is_transient(resp.status_code):
                break
            time.sleep(backoff)
            backoff *= 1.5
        else:
            resp = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        if resp.status_code >= 400:
            raise JobsApiError.from_response(resp)
        return resp

    def submit(
        self,
        kind: str,
        files: Iterable[str | Path | tuple[str, bytes]],
        options: dict[str, Any] | None = None,
        filename: str | None = None,
    ) -> dict[str, Any]:
        """Upload inputs and create a job. Returns the 202 body (``jobId``, ``status``, ``links``)."""
        parts = []
        for item in files:
            if isinstance(item, tuple):
                name, data = item
            else:
                name, data = Path(item).name, Path(item).read_bytes()
            parts.append(("files", (name, data, "application/pdf")))
        form = {"kind": kind}
        if options:
            form["options"] = json.dumps(options)
        if filename:
            form["filename"] = filename
        headers = {"x-api-key": self.api_key} if self.api_key else {}
        return self._request("POST", "/jobs", data=form, files=parts, headers=headers).json()

    def status(self, job_id: str) -> dict[str, Any]:
        return self._request("GET", f"/jobs/{job_id}", retry=True).json()

    def cancel(self, job_id: str) -> dict[str, Any]:
        return self._request("POST", f"/jobs/{job_id}/cancel").json()

    def wait(self, job_id: str, *, timeout: float = 300.0, interval: float = 0.5) -> dict[str, Any]:
        """Poll until the job is terminal and return its final status."""
        deadline = time.monotonic() + timeout
        while True:
            state = self.status(job_id)
            if state.get("status") in TERMINAL:
                return state
            if time.monotonic() >= deadline:
                raise TimeoutError(f"job {job_id} still {state.get('status')} after {timeout}s")
            time.sleep(interval)

    def download(self, job_id: str, dest: str | Path | None = None) -> bytes | Path:
        """Fetch a succeeded job's artifact; write it to ``dest`` when given."""
        resp = self._request("GET", f"/jobs/download/{job_id}", retry=True)
        if dest is None:
            return resp.content
        path = Path(dest)
        path.write_bytes(resp.content)
        return path

    def metrics(self) -> dict[str, Any]:
        return self._request("GET", "/admin/jobs/metrics", headers=self._admin_headers()).json()

    def cleanup(self) -> dict[str, Any]:
        return self._request("POST", "/admin/jobs/cleanup", headers=self._admin_headers()).json()
