from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional
from contextlib import asynccontextmanager
import asyncio
import json

from .bundle_parser import validate_upload
from .config import Config, get_config, is_test_environment
from .exceptions import EHRBaseException, ValidationError, handle_ehr_exception
from .logging_config import get_logger, setup_logging
from .notifier import DataChangeBroadcaster
from .services import IngestServices

logger = get_logger(__name__)

class UploadResponse(BaseModel):
    success: bool
    message: str
    fileName: str
    queued: bool

class NotifyResponse(BaseModel):
    success: bool

async def event_stream(broadcaster: DataChangeBroadcaster, queue: asyncio.Queue) -> AsyncIterator[str]:
    """Server-Sent Events body: a ping, then one data line per change"""
    try:
        yield ": ping\n\n"
        while True:
            event = await queue.get()
            yield f"data: {json.dumps(event)}\n\n"
    finally:
        broadcaster.unsubscribe(queue)

def _services(request: Request) -> IngestServices:
    return request.app.state.services

def create_app(config: Optional[Config] = None) -> FastAPI:
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not is_test_environment():
            setup_logging(config.app.log_level, config.app.log_file)
        services = IngestServices(config)
        app.state.services = services
        services.data_dir.mkdir(parents=True, exist_ok=True)

        watcher_task = None
        if config.ingest.watch_on_startup:
            watcher_task = asyncio.create_task(services.watcher.run())
        else:
            logger.info("Directory watching on startup is disabled")

        yield

        services.watcher.stop()
        if watcher_task is not None:
            watcher_task.cancel()
            try:
                await watcher_task
            except asyncio.CancelledError:
                pass
        await services.coordinator.wait_idle()
        await services.coordinator.drain_notifications()

    app = FastAPI(title="EHR Explorer ingestion", debug=config.app.debug, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.app.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EHRBaseException)
    async def _ehr_exception_handler(request: Request, exc: EHRBaseException):
        http_exc = handle_ehr_exception(exc)
        return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})

    @app.get("/")
    def read_root():
        return {
            "message": "EHR Explorer ingestion service",
            "data_dir": config.ingest.data_dir,
            "database": config.database.path
        }

    @app.get("/health")
    async def health_check(request: Request):
        services = _services(request)
        try:
            patient_count = await asyncio.to_thread(services.db.get_patient_count)
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            raise HTTPException(status_code=503, detail=f"Database error: {str(e)}")
        return {
            "status": "healthy",
            "patients": patient_count,
            "ingest_state": services.coordinator.state.value
        }

    @app.post("/upload-patient", response_model=UploadResponse)
    async def upload_patient(request: Request, file: UploadFile = File(...)):
        """Save an uploaded bundle into the data directory and queue it"""
        services = _services(request)
        if not file.filename:
            raise ValidationError("No file uploaded", error_code="NO_FILE")
        file_name = Path(file.filename).name
        if not file_name.endswith(config.ingest.file_suffix):
            raise ValidationError("Only JSON files are allowed", error_code="INVALID_FILE_TYPE")

        content = await file.read()
        validate_upload(content)

        target = services.data_dir / file_name
        try:
            await asyncio.to_thread(target.write_bytes, content)
        except OSError as e:
            logger.error(f"Error uploading file: {e}")
            raise HTTPException(status_code=500, detail="Failed to upload file")

        queued = services.coordinator.submit(target)
        return UploadResponse(
            success=True,
            message="File uploaded successfully",
            fileName=file_name,
            queued=queued
        )

    @app.post("/notify-data-change", response_model=NotifyResponse)
    async def notify_data_change(request: Request):
        delivered = await _services(request).notifier.notify()
        return NotifyResponse(success=delivered)

    @app.get("/data-events")
    async def data_events(request: Request):
        broadcaster = _services(request).broadcaster
        queue = broadcaster.subscribe()
        return StreamingResponse(
            event_stream(broadcaster, queue),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"}
        )

    @app.get("/ingest/status")
    async def ingest_status(request: Request) -> Dict[str, Any]:
        services = _services(request)
        status = services.coordinator.status()
        status["tables"] = await asyncio.to_thread(services.db.get_table_counts)
        return status

    @app.post("/ingest/reset")
    async def ingest_reset(request: Request):
        """Clear every patient and re-ingest the data directory"""
        services = _services(request)
        result = await services.coordinator.reset_and_reprocess(services.data_dir)
        return {"status": "success", **result}

    return app

app = create_app()
