import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, Request, Response, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from . import __version__, metrics
from .conversion import default_registry
from .jobs import ConversionRegistry, JobService, JobServiceError, LocalStorage, UploadLimits
from .logging_config import setup_logging
from .settings import Settings, env_bool


class ErrorBody(BaseModel):
    code: str
    message: str


class JobStatusResponse(BaseModel):
    id: str
    kind: str
    status: str
    progress: float
    error: ErrorBody | None = None
    downloadUrl: str | None = None
    createdAt: str
    startedAt: str | None = None
    finishedAt: str | None = None


class CleanupResponse(BaseModel):
    ok: bool
    ran: bool
    removedJobs: int
    removedFiles: int
    deferred: int


def build_service(settings: Settings, registry: ConversionRegistry | None = None) -> JobService:
    storage = LocalStorage(settings.output_dir, settings.upload_dir)
    return JobService(
        storage,
        registry or default_registry(),
        workers=settings.workers,
        max_queue_depth=settings.max_queue_depth,
        max_per_client=settings.max_per_client,
        job_timeout=settings.job_timeout_sec or None,
        retention=settings.retention_sec,
        reaper_interval=settings.reaper_interval_sec,
        lease_timeout=settings.lease_timeout_sec,
        admin_key=settings.admin_key,
        upload_limits=UploadLimits(
            max_file_bytes=settings.max_file_bytes,
            max_total_bytes=settings.max_total_bytes,
            max_files=settings.max_files,
        ),
    )


def get_service(request: Request) -> JobService:
    return request.app.state.service


def require_admin(
    x_admin_key: str | None = Header(None),
    service: JobService = Depends(get_service),
) -> JobService:
    service.require_admin(x_admin_key)
    return service


router = APIRouter()


@router.get("/health")
def health() -> dict[str, str]:
    """Basic health check endpoint."""
    return {"status": "ok"}


@router.get("/metrics", include_in_schema=False)
def prometheus_metrics() -> Response:
    data, content_type = metrics.render_latest()
    return Response(content=data, media_type=content_type)


@router.post("/jobs", status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    request: Request,
    kind: str = Form(...),
    options: str | None = Form(None),
    filename: str | None = Form(None),
    files: list[UploadFile] = File(...),
    x_api_key: str | None = Header(None),
    service: JobService = Depends(get_service),
) -> JSONResponse:
    """Create a new conversion job from uploaded documents.

    Accepts multipart/form-data with a ``kind`` field, an optional ``options``
    JSON object, an optional download ``filename`` and one or more ``files``.
    Returns 202 Accepted as soon as the job is queued. Active jobs are counted
    per ``X-API-Key`` (or per client address without one) when a per-client
    cap is configured.
    """
    client_key = x_api_key or (request.client.host if request.client else None)
    uploads = [(f.filename or "upload", f.content_type, f.read) for f in files]
    job = await service.create_job_from_upload(kind, options, uploads, filename=filename, client_key=client_key)
    body = {
        "jobId": job.id,
        "status": job.status.value,
        "links": {
            "self": f"/jobs/{job.id}",
            "download": f"/jobs/download/{job.id}",
        },
    }
    headers = {"Location": f"/jobs/{job.id}"}
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body, headers=headers)


@router.get("/jobs/download/{job_id}")
async def download_job(job_id: str, service: JobService = Depends(get_service)) -> FileResponse:
    download = service.open_download(job_id)
    try:
        return FileResponse(
            download.path,
            media_type=download.media_type,
            filename=download.filename,
            headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
            background=BackgroundTask(download.release),
        )
    except BaseException:
        download.release()
        raise


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, service: JobService = Depends(get_service)) -> dict[str, Any]:
    return service.status(job_id)


@router.post("/jobs/{job_id}/cancel", response_model=JobStatusResponse, status_code=status.HTTP_202_ACCEPTED)
async def cancel_job(job_id: str, service: JobService = Depends(get_service)) -> dict[str, Any]:
    return service.cancel(job_id)


@router.get("/admin/jobs/metrics")
async def admin_metrics(service: JobService = Depends(require_admin)) -> dict[str, Any]:
    return service.metrics()


@router.post("/admin/jobs/cleanup", response_model=CleanupResponse)
async def admin_cleanup(service: JobService = Depends(require_admin)) -> dict[str, Any]:
    report = await service.force_cleanup()
    return {"ok": True, **report.to_dict()}


def create_app(service: JobService | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the HTTP application around an explicitly constructed JobService.

    With no arguments the service is configured from the environment, which is
    what ``uvicorn --factory`` uses.
    """
    if service is None:
        if settings is None:
            settings = Settings.from_env()
            setup_logging(settings.log_level, settings.log_file)
        service = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    app = FastAPI(
        title="Document Job Service",
        version=os.getenv("DOC_JOBS_VERSION", __version__),
        description=(
            "Asynchronous document conversion jobs: submit, poll for status "
            "and download the result before it expires."
        ),
        lifespan=lifespan,
    )
    app.state.service = service

    @app.exception_handler(JobServiceError)
    async def _job_service_error(request: Request, exc: JobServiceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
        message = "malformed request" + (f": {', '.join(fields)}" if fields else "")
        return JSONResponse(status_code=400, content={"detail": {"code": "validation", "message": message}})

    app.include_router(router)
    return app


def run() -> None:
    """Run the ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set PORT env var to override.
    """
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8080"))
    reload = env_bool("RELOAD")

    uvicorn.run("doc_jobs.webapi:create_app", factory=True, host=host, port=port, reload=reload)


if __name__ == "__main__":
    run()
