"""Main entry point for the Match Stream Recorder API."""

import os
import logging
import uuid
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, status, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware

from match_recorder import __version__
from match_recorder.models.api import (
    RecordingRequest,
    StartRecordingResponse,
    StopRecordingRequest,
    MatchRequest,
    AutoRecordRequest,
    ActiveRecording,
    ActiveRecordingsResponse,
    CreateScheduleRequest,
    PresignedUrlResponse,
    HealthResponse,
    ErrorResponse
)
from match_recorder.models.config import RecorderConfig, StorageConfig
from match_recorder.models.domain import Match
from match_recorder.services.config_manager import ConfigManager, ConfigurationError
from match_recorder.services.object_store import ObjectStoreError, S3ObjectStore
from match_recorder.services.persistence import SQLitePersistenceStore, run_blocking
from match_recorder.services.catalog import PersistedStreamCatalog
from match_recorder.services.upload_service import UploadPipeline
from match_recorder.services.recording_service import (
    RecordingLifecycleManager,
    RecordingLifecycleError,
    AlreadyActive,
    AlreadyTerminal,
    NotActive,
    InsufficientResources,
    CaptureStartError,
    RecordingNotFound,
    NotUploaded,
    UnknownStreamSource
)
from match_recorder.services.scheduler_service import (
    ScheduleDispatcher,
    ScheduleError,
    ScheduleNotFound,
    ScheduleNotPending,
    ScheduleResolutionError,
    InvalidSchedule
)
from match_recorder.utils.logging_config import (
    setup_logging,
    log_api_request,
    log_api_response,
    get_request_logger,
    log_performance_metric
)
from match_recorder.utils.performance_monitor import ResourceMonitor

# Initialize structured logging
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_dir=os.getenv("APP_LOG_DIR", "./logs"),
    enable_console=True,
    enable_file=os.getenv("LOG_TO_FILE", "true").lower() == "true",
    enable_structured=True
)

logger = logging.getLogger(__name__)

# Initialize application configuration
app_config = RecorderConfig(
    recordings_dir=os.getenv("RECORDINGS_PATH", "./recordings"),
    config_dir=os.getenv("APP_CONFIG_DIR", "./config"),
    database_path=os.getenv("DATABASE_PATH", "./data/recorder.db"),
    log_dir=os.getenv("APP_LOG_DIR", "./logs"),
    port=int(os.getenv("APP_PORT", "8000")),
    ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),
    ffprobe_path=os.getenv("FFPROBE_PATH", "ffprobe"),
    max_duration_seconds=float(os.getenv("MAX_RECORDING_DURATION", "7200")),
    stop_grace_seconds=float(os.getenv("STOP_GRACE_SECONDS", "10")),
    min_free_disk_mb=int(os.getenv("MIN_FREE_DISK_MB", "500")),
    tick_interval_seconds=float(os.getenv("SCHEDULER_TICK_SECONDS", "60")),
    lookahead_seconds=float(os.getenv("SCHEDULER_LOOKAHEAD_SECONDS", "300")),
    storage=StorageConfig(
        endpoint_url=os.getenv("S3_ENDPOINT") or None,
        bucket=os.getenv("S3_BUCKET", ""),
        region=os.getenv("S3_REGION", "us-east-1"),
        access_key_id=os.getenv("S3_ACCESS_KEY") or None,
        secret_access_key=os.getenv("S3_SECRET_KEY") or None
    )
)

# Initialize FastAPI application
app = FastAPI(
    title="Match Stream Recorder API",
    description="API for recording live match streams on demand or on schedule",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=os.getenv("ALLOWED_HOSTS", "*").split(",")
)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Middleware for logging API requests and responses."""
    request_id = str(uuid.uuid4())
    method = request.method
    endpoint = str(request.url.path)

    start_time = time.time()
    log_api_request(
        request_id=request_id,
        endpoint=endpoint,
        method=method,
        client_ip=request.client.host if request.client else "unknown",
        query_params=dict(request.query_params) if request.query_params else None
    )

    try:
        response = await call_next(request)
        duration = time.time() - start_time

        log_api_response(
            request_id=request_id,
            endpoint=endpoint,
            method=method,
            status_code=response.status_code,
            duration=duration
        )
        log_performance_metric(
            component="api",
            operation=f"{method}_{endpoint.replace('/', '_')}",
            duration=duration,
            status_code=response.status_code
        )

        response.headers["X-Request-ID"] = request_id
        return response

    except Exception as e:
        request_logger = get_request_logger(request_id, endpoint, method)
        request_logger.error(f"Request failed: {e}", extra={
            'duration': time.time() - start_time,
            'error_type': type(e).__name__
        })
        raise


ERROR_STATUS_CODES = {
    AlreadyActive: status.HTTP_409_CONFLICT,
    AlreadyTerminal: status.HTTP_409_CONFLICT,
    NotActive: status.HTTP_409_CONFLICT,
    ScheduleNotPending: status.HTTP_409_CONFLICT,
    RecordingNotFound: status.HTTP_404_NOT_FOUND,
    NotUploaded: status.HTTP_404_NOT_FOUND,
    ScheduleNotFound: status.HTTP_404_NOT_FOUND,
    UnknownStreamSource: status.HTTP_400_BAD_REQUEST,
    InvalidSchedule: status.HTTP_400_BAD_REQUEST,
    ScheduleResolutionError: status.HTTP_400_BAD_REQUEST,
    InsufficientResources: status.HTTP_503_SERVICE_UNAVAILABLE,
    CaptureStartError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Bad Request"},
    404: {"model": ErrorResponse, "description": "Not Found"},
    409: {"model": ErrorResponse, "description": "Conflict"},
    503: {"model": ErrorResponse, "description": "Service Unavailable"}
}


def http_error(error: Exception) -> HTTPException:
    """Map a lifecycle or schedule error to an HTTP error."""
    status_code = ERROR_STATUS_CODES.get(type(error), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error(f"Request failed: {error}", extra={'error_details': error.to_dict()})
    else:
        logger.warning(f"Request rejected: {error}", extra={'error_details': error.to_dict()})
    return HTTPException(status_code=status_code, detail=str(error))


def build_services(config: RecorderConfig, streams: ConfigManager):
    """Wire the persistence store, lifecycle manager and dispatcher.

    Returns:
        Tuple of (store, manager, dispatcher, resource_monitor, catalog)
    """
    store = SQLitePersistenceStore(config.database_path)
    object_store = None
    if config.storage.is_configured:
        object_store = S3ObjectStore(config.storage)
    else:
        logger.warning("S3_BUCKET not set, finished recordings cannot be uploaded")

    catalog = PersistedStreamCatalog(store, streams)
    resource_monitor = ResourceMonitor(config.recordings_dir, min_free_disk_mb=config.min_free_disk_mb)
    upload_pipeline = UploadPipeline(
        object_store,
        store,
        key_prefix=config.storage.key_prefix,
        ffprobe_path=config.ffprobe_path
    )
    manager = RecordingLifecycleManager(
        store,
        upload_pipeline,
        config,
        resource_monitor=resource_monitor,
        catalog=catalog,
        object_store=object_store
    )
    dispatcher = ScheduleDispatcher(store, manager, config, catalog=catalog)
    return store, manager, dispatcher, resource_monitor, catalog


# Initialize configuration manager
config_manager = ConfigManager(config_dir=app_config.config_dir)

# Services are set up in the startup event
store = None
lifecycle_manager = None
dispatcher = None
resource_monitor = None
catalog = None


@app.on_event("startup")
async def startup_event():
    """Initialize application on startup."""
    global store, lifecycle_manager, dispatcher, resource_monitor, catalog

    try:
        config_manager.load_configurations()
    except ConfigurationError as e:
        # Manual requests can still use raw stream URLs
        logger.warning(f"Stream sources unavailable: {e}")

    try:
        store, lifecycle_manager, dispatcher, resource_monitor, catalog = build_services(
            app_config, config_manager
        )
        lifecycle_manager.recover_orphans()
        interrupted = dispatcher.recover_interrupted()
        if interrupted:
            logger.warning(f"Marked {interrupted} interrupted schedules as failed")
        await dispatcher.start()
        logger.info("Application started successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise


def _require_services():
    if lifecycle_manager is None or dispatcher is None:
        logger.error("Recording services not initialized")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Recording service not available"
        )


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Match Stream Recorder API", "version": __version__}


@app.post("/recordings", status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
async def create_recording(request: RecordingRequest):
    """Create a pending recording, to be started later or by a schedule."""
    _require_services()
    try:
        recording = await lifecycle_manager.create(request)
    except RecordingLifecycleError as e:
        raise http_error(e)
    return recording.to_dict()


@app.post("/recordings/start", response_model=StartRecordingResponse,
          status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
async def start_new_recording(request: RecordingRequest) -> StartRecordingResponse:
    """Create a recording and start capturing it immediately.

    The capture runs in the background; the response returns as soon as the
    capture process is launched.
    """
    _require_services()
    try:
        recording_id = await lifecycle_manager.start_manual(request)
    except RecordingLifecycleError as e:
        raise http_error(e)

    return StartRecordingResponse(
        success=True,
        message="Recording started",
        recording_id=recording_id
    )


@app.post("/recordings/{recording_id}/start", response_model=StartRecordingResponse, responses=ERROR_RESPONSES)
async def start_recording(recording_id: str) -> StartRecordingResponse:
    """Start a pending recording."""
    _require_services()
    try:
        await lifecycle_manager.start_by_id(recording_id)
    except RecordingLifecycleError as e:
        raise http_error(e)

    return StartRecordingResponse(
        success=True,
        message="Recording started",
        recording_id=recording_id
    )


@app.get("/recordings/active", response_model=ActiveRecordingsResponse)
async def active_recordings() -> ActiveRecordingsResponse:
    """List captures currently owned by this service."""
    _require_services()
    snapshot = await lifecycle_manager.active_snapshot()
    return ActiveRecordingsResponse(
        count=len(snapshot),
        recordings=[
            ActiveRecording(
                recording_id=entry['recording_id'],
                title=entry['title'],
                started_at=entry['started_at'],
                elapsed_seconds=entry['elapsed_seconds']
            )
            for entry in snapshot
        ]
    )


@app.get("/recordings/{recording_id}", responses=ERROR_RESPONSES)
async def get_recording(recording_id: str):
    _require_services()
    recording = await run_blocking(store.get_recording, recording_id)
    if recording is None:
        raise http_error(RecordingNotFound(f"Recording {recording_id} does not exist", recording_id=recording_id))
    return recording.to_dict()


@app.post("/recordings/{recording_id}/stop", responses=ERROR_RESPONSES)
async def stop_recording(recording_id: str, request: Optional[StopRecordingRequest] = None):
    """Stop an active capture and return the final recording."""
    _require_services()
    try:
        recording = await lifecycle_manager.stop(recording_id, reason=request.reason if request else None)
    except RecordingLifecycleError as e:
        raise http_error(e)
    return recording.to_dict()


@app.delete("/recordings/{recording_id}", responses=ERROR_RESPONSES)
async def delete_recording(recording_id: str):
    _require_services()
    try:
        await lifecycle_manager.delete_recording(recording_id)
    except RecordingLifecycleError as e:
        raise http_error(e)
    return {"success": True, "recording_id": recording_id}


@app.get("/recordings/{recording_id}/url", response_model=PresignedUrlResponse, responses=ERROR_RESPONSES)
async def recording_url(
    recording_id: str,
    expires_in: Optional[int] = Query(None, gt=0, le=604800),
    operation: str = Query("get_object", pattern="^(get_object|put_object)$")
) -> PresignedUrlResponse:
    """Issue a presigned URL for a recording's stored object."""
    _require_services()
    ttl = expires_in or app_config.presigned_url_ttl_seconds
    try:
        url = lifecycle_manager.playback_url(recording_id, ttl, operation)
    except RecordingLifecycleError as e:
        raise http_error(e)
    except ObjectStoreError as e:
        logger.error(f"Presign failed for {recording_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return PresignedUrlResponse(recording_id=recording_id, url=url, expires_in=ttl)


async def _schedule_if_auto_record(match: Match) -> list:
    if not match.auto_record:
        return []
    created = await run_blocking(dispatcher.generate_auto_schedules)
    return [schedule.id for schedule in created if schedule.match_id == match.id]


@app.post("/matches", status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
async def save_match(request: MatchRequest):
    """Add a match, or update the one with the same external id.

    Auto-record matches are scheduled straight away instead of on the next
    auto-schedule pass.
    """
    _require_services()
    stream_url = request.stream_url
    if request.source:
        stream_url = catalog.stream_url(request.source)
        if not stream_url:
            raise http_error(UnknownStreamSource(f"Unknown stream source: {request.source}"))

    match = await run_blocking(catalog.save_match, Match(
        id="",
        home_team=request.home_team,
        away_team=request.away_team,
        match_date=request.match_date,
        competition=request.competition,
        external_id=request.external_id,
        stream_url=stream_url,
        auto_record=request.auto_record
    ))
    return {"match": match.to_dict(), "schedules_created": await _schedule_if_auto_record(match)}


@app.post("/matches/{match_id}/auto-record", responses=ERROR_RESPONSES)
async def toggle_auto_record(match_id: str, request: AutoRecordRequest):
    """Enable or disable auto-recording for a match."""
    _require_services()
    match = await run_blocking(catalog.set_auto_record, match_id, request.auto_record)
    if match is None:
        logger.warning(f"Auto-record toggle for unknown match {match_id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Match {match_id} does not exist")
    return {"match": match.to_dict(), "schedules_created": await _schedule_if_auto_record(match)}


@app.post("/schedules", status_code=status.HTTP_201_CREATED, responses=ERROR_RESPONSES)
async def create_schedule(request: CreateScheduleRequest):
    """Schedule a recording for a match or an existing recording."""
    _require_services()
    try:
        schedule = await run_blocking(
            dispatcher.create_schedule,
            scheduled_start=request.scheduled_start,
            scheduled_end=request.scheduled_end,
            match_id=request.match_id,
            recording_id=request.recording_id
        )
    except ScheduleError as e:
        raise http_error(e)
    return schedule.to_dict()


@app.post("/schedules/{schedule_id}/execute", responses=ERROR_RESPONSES)
async def execute_schedule(schedule_id: str):
    """Run a pending schedule now instead of waiting for its start time."""
    _require_services()
    try:
        schedule = await dispatcher.execute_schedule_now(schedule_id)
    except ScheduleError as e:
        raise http_error(e)
    return schedule.to_dict()


@app.get("/healthz", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint for service monitoring.

    Unhealthy when the services are not initialized, degraded when resource
    usage crosses a threshold or the dispatcher loop is not running.
    """
    overall_status = "healthy"
    details = {'stream_sources_loaded': config_manager.is_loaded()}

    if lifecycle_manager is None or dispatcher is None:
        overall_status = "unhealthy"
    else:
        try:
            resources = resource_monitor.get_resource_summary()
            details['resources'] = resources
            if resources['status'] == 'warning':
                overall_status = 'degraded'
            if not dispatcher.is_running:
                overall_status = 'degraded'
            details['active_recordings'] = len(lifecycle_manager.registry)
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            overall_status = "unhealthy"
            details['error'] = str(e)

    logger.info("Health check performed", extra={
        'health_status': overall_status,
        'service_details': details
    })
    return HealthResponse(
        status=overall_status,
        timestamp=datetime.now(timezone.utc),
        version=__version__
    )


@app.get("/status")
async def get_status():
    """Get detailed system status including active recordings and statistics."""
    _require_services()
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service_status": "running",
        "active_recordings": await lifecycle_manager.active_snapshot(),
        "recording_statistics": lifecycle_manager.get_statistics(),
        "schedule_statistics": dispatcher.get_statistics()
    }


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the dispatcher, then every active capture."""
    try:
        if dispatcher is not None:
            await dispatcher.stop()
        if lifecycle_manager is not None:
            await lifecycle_manager.shutdown()
        logger.info("Application shutdown completed")
    except Exception as e:
        logger.error(f"Error during application shutdown: {e}")


def run():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app_config.port)


if __name__ == "__main__":
    run()
