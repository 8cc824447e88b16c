import asyncio
import logging
import os
import threading
from contextlib import asynccontextmanager
from typing import Any, Callable, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from pdfstation.compression import estimate_compressed_size
from pdfstation.config import resolve_config
from pdfstation.errors import InvalidJobRequestError, JobNotFoundError, JobNotReadyError
from pdfstation.jobs.models import Job, JobStatus, Operation, ProtectionAction
from pdfstation.logging_setup import configure_logging
from pdfstation.models import StationConfig
from pdfstation.runtime import Station, build_station

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    ".pdf": "application/pdf",
    ".zip": "application/zip",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def create_app(config: Optional[StationConfig] = None) -> FastAPI:
    """Build the HTTP app. The Station is created on first use and closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        station = app.state.station
        if station is not None:
            station.close()
            app.state.station = None

    app = FastAPI(title="pdfstation", lifespan=lifespan)
    app.state.config = config
    app.state.station = None
    app.state.station_lock = threading.Lock()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def get_station(request: Request) -> Station:
    # Sync dependency: FastAPI resolves it in its threadpool
    app = request.app
    with app.state.station_lock:
        if app.state.station is None:
            if app.state.config is None:
                app.state.config = resolve_config()
                configure_logging(app.state.config.logging.level)
            app.state.station = build_station(app.state.config)
    return app.state.station


async def run_blocking(station: Station, func: Callable[..., Any], *args: Any) -> Any:
    """Run a Station call in a worker thread, one call at a time per Station.

    Staging copies and SQLite writes (which may wait on the busy timeout)
    never run on the event loop.
    """

    def call():
        with station.lock:
            return func(*args)

    return await asyncio.to_thread(call)


# --- Helpers ---


def _job_summary(job: Job) -> dict:
    completed = job.status == JobStatus.COMPLETED
    return {
        "job_id": job.id,
        "operation": job.operation.value,
        "status": job.status.value,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "error_message": job.error_message,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
        "output_available": completed,
        "download_url": f"/jobs/{job.id}/download" if completed else None,
    }


def _check_pdf(upload: UploadFile) -> None:
    filename = upload.filename or ""
    if not filename.lower().endswith(".pdf") and (upload.content_type or "") != "application/pdf":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_FILE", "message": "Only PDF uploads are supported", "filename": filename},
        )


async def _submit(station: Station, operation: Operation, uploads: List[UploadFile], params: dict) -> dict:
    for upload in uploads:
        _check_pdf(upload)
    files = [(upload.filename, upload.file) for upload in uploads]
    try:
        job = await run_blocking(station, station.submissions.submit, operation, files, params)
    except InvalidJobRequestError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_REQUEST", "message": str(e)},
        )
    return {"job_id": job.id, "status": job.status.value}


def _not_found(job_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "JOB_NOT_FOUND", "message": "Job not found", "job_id": job_id},
    )


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    # --- JOB CREATION ENDPOINTS ---

    @app.post("/jobs/compress", status_code=status.HTTP_202_ACCEPTED)
    async def create_compress_job(
        file: UploadFile = File(...),
        quality: int = Form(50, ge=0, le=100),
        station: Station = Depends(get_station),
    ):
        """Compress a PDF; quality 0-100 (higher keeps more detail)."""
        return await _submit(station, Operation.COMPRESS, [file], {"quality": quality / 100.0})

    @app.post("/jobs/merge", status_code=status.HTTP_202_ACCEPTED)
    async def create_merge_job(
        files: List[UploadFile] = File(...),
        station: Station = Depends(get_station),
    ):
        """Merge PDFs in upload order."""
        return await _submit(station, Operation.MERGE, files, {})

    @app.post("/jobs/split", status_code=status.HTTP_202_ACCEPTED)
    async def create_split_job(
        file: UploadFile = File(...),
        split_type: str = Form(...),
        split_ranges: Optional[str] = Form(None),
        split_interval: Optional[int] = Form(None),
        station: Station = Depends(get_station),
    ):
        params = {"mode": split_type.upper(), "ranges": split_ranges, "interval": split_interval}
        return await _submit(station, Operation.SPLIT, [file], params)

    @app.post("/jobs/protect", status_code=status.HTTP_202_ACCEPTED)
    async def create_protect_job(
        file: UploadFile = File(...),
        user_password: str = Form(...),
        owner_password: Optional[str] = Form(None),
        allow_printing: bool = Form(True),
        allow_copying: bool = Form(True),
        allow_modification: bool = Form(True),
        allow_assembly: bool = Form(True),
        station: Station = Depends(get_station),
    ):
        params = {
            "action": ProtectionAction.ADD,
            "user_password": user_password,
            "owner_password": owner_password or None,
            "allow_printing": allow_printing,
            "allow_copying": allow_copying,
            "allow_modification": allow_modification,
            "allow_assembly": allow_assembly,
        }
        return await _submit(station, Operation.PROTECT, [file], params)

    @app.post("/jobs/unprotect", status_code=status.HTTP_202_ACCEPTED)
    async def create_unprotect_job(
        file: UploadFile = File(...),
        password: str = Form(...),
        station: Station = Depends(get_station),
    ):
        params = {"action": ProtectionAction.REMOVE, "password": password}
        return await _submit(station, Operation.PROTECT, [file], params)

    @app.post("/jobs/pdf-to-word", status_code=status.HTTP_202_ACCEPTED)
    async def create_pdf_to_word_job(
        file: UploadFile = File(...),
        station: Station = Depends(get_station),
    ):
        return await _submit(station, Operation.PDF_TO_WORD, [file], {})

    # --- JOB QUERY ENDPOINTS ---

    @app.get("/jobs")
    async def list_jobs(
        status_filter: Optional[JobStatus] = Query(None, alias="status"),
        station: Station = Depends(get_station),
    ):
        """List jobs, most recent first."""
        jobs = await run_blocking(station, station.submissions.list_jobs, status_filter)
        return [_job_summary(job) for job in jobs]

    @app.get("/jobs/estimate-size")
    async def estimate_size(
        original_size: int = Query(..., ge=0),
        quality: int = Query(50, ge=0, le=100),
    ):
        """Rough compressed size for a file of `original_size` bytes."""
        return {
            "original_size": original_size,
            "quality": quality,
            "estimated_size": estimate_compressed_size(original_size, quality),
        }

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, station: Station = Depends(get_station)):
        try:
            job = await run_blocking(station, station.submissions.get_job, job_id)
        except JobNotFoundError:
            raise _not_found(job_id)
        return _job_summary(job)

    @app.get("/jobs/{job_id}/download")
    async def download_output(job_id: str, station: Station = Depends(get_station)):
        """Stream the output of a COMPLETED job (409 while it is still running)."""
        try:
            output_path = await run_blocking(station, station.submissions.resolve_output, job_id)
        except JobNotFoundError:
            raise _not_found(job_id)
        except JobNotReadyError as e:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "code": "JOB_NOT_READY",
                    "message": "PDF not ready yet",
                    "job_id": job_id,
                    "status": e.status,
                },
            )

        if not os.path.isfile(output_path):
            logger.error("Output of job %s is missing on disk: %s", job_id, output_path)
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "OUTPUT_MISSING", "message": "Output file no longer exists", "job_id": job_id},
            )

        suffix = os.path.splitext(output_path)[1].lower()
        return FileResponse(
            output_path,
            media_type=MEDIA_TYPES.get(suffix, "application/octet-stream"),
            filename=os.path.basename(output_path),
        )


app = create_app()
