"""Recording lifecycle manager: start, stop, watchdog and completion handling."""

import asyncio
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from match_recorder.models.api import RecordingRequest
from match_recorder.models.config import RecorderConfig
from match_recorder.models.domain import Recording, RecordingStatus, utcnow
from match_recorder.services.capture import (
    CaptureEvent,
    CaptureFailed,
    CaptureLaunchError,
    CaptureProcess,
    build_ffmpeg_command,
)
from match_recorder.services.interfaces import ObjectStore, PersistenceStore, StreamCatalog
from match_recorder.services.persistence import run_blocking
from match_recorder.services.registry import ActiveCapture, RecordingRegistry
from match_recorder.services.upload_service import UploadPipeline
from match_recorder.utils.logging_config import get_recording_logger, log_recording_step
from match_recorder.utils.performance_monitor import ResourceMonitor

logger = logging.getLogger(__name__)

MAX_DURATION_REASON = "max duration exceeded"
SHUTDOWN_REASON = "service shutdown"
RESTART_REASON = "Capture interrupted by service restart"
DELETE_REASON = "deleted"

# Stops whose flushed output stays on local disk
KEEP_LOCAL_REASONS = (SHUTDOWN_REASON, DELETE_REASON)


class RecordingLifecycleError(Exception):
    """Base exception for lifecycle errors, carrying the recording id."""

    def __init__(self, message: str, recording_id: Optional[str] = None):
        super().__init__(message)
        self.recording_id = recording_id
        self.timestamp = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and responses."""
        return {
            'error_type': self.__class__.__name__,
            'message': str(self),
            'recording_id': self.recording_id,
            'timestamp': self.timestamp.isoformat()
        }


class AlreadyActive(RecordingLifecycleError):
    """The recording already has a registered capture."""
    pass


class AlreadyTerminal(RecordingLifecycleError):
    """The recording reached a terminal state and cannot be started again."""
    pass


class NotActive(RecordingLifecycleError):
    """No capture is registered for the recording."""
    pass


class InsufficientResources(RecordingLifecycleError):
    """The host cannot take another capture right now."""
    pass


class CaptureStartError(RecordingLifecycleError):
    """The capture process could not be launched."""
    pass


class RecordingNotFound(RecordingLifecycleError):
    pass


class NotUploaded(RecordingLifecycleError):
    """The recording has no object in storage."""
    pass


class UnknownStreamSource(RecordingLifecycleError):
    pass


CaptureFactory = Callable[[str, List[str], str], CaptureProcess]


class RecordingLifecycleManager:
    """Owns every capture from admission to terminal state.

    Start is non-blocking: each admitted capture gets a supervisor task that
    consumes the capture's single completion event, and a watchdog task that
    enforces the maximum duration. A registry entry lives until the capture
    and any upload of its output are finished.
    """

    def __init__(
        self,
        store: PersistenceStore,
        upload_pipeline: UploadPipeline,
        config: RecorderConfig,
        registry: Optional[RecordingRegistry] = None,
        resource_monitor: Optional[ResourceMonitor] = None,
        catalog: Optional[StreamCatalog] = None,
        object_store: Optional[ObjectStore] = None,
        capture_factory: CaptureFactory = CaptureProcess,
        command_builder: Callable[..., List[str]] = build_ffmpeg_command
    ):
        """Initialize the lifecycle manager.

        Args:
            store: Persistence for recording rows
            upload_pipeline: Pipeline used when a capture finishes cleanly
            config: Recorder configuration
            registry: Active capture registry (a fresh one if omitted)
            resource_monitor: Free-disk admission check (skipped if omitted)
            catalog: Stream catalog for named sources in manual requests
            object_store: Object store used for deletion and presigned URLs
            capture_factory: Builds a capture process from id, command and path
            command_builder: Builds the capture command line
        """
        self.store = store
        self.upload_pipeline = upload_pipeline
        self.config = config
        self.registry = registry or RecordingRegistry()
        self.resource_monitor = resource_monitor
        self.catalog = catalog
        self.object_store = object_store
        self.capture_factory = capture_factory
        self.command_builder = command_builder
        self.recordings_dir = Path(config.recordings_dir)
        self.recordings_dir.mkdir(parents=True, exist_ok=True)

        self._stats = {
            'started': 0,
            'completed': 0,
            'failed': 0,
            'stopped': 0,
            'last_reset': utcnow()
        }
        self._archives: Set[asyncio.Task] = set()

        logger.info("RecordingLifecycleManager initialized", extra={
            'recordings_dir': str(self.recordings_dir),
            'max_duration_seconds': config.max_duration_seconds,
            'stop_grace_seconds': config.stop_grace_seconds
        })

    def output_path_for(self, recording: Recording, started_at: datetime) -> str:
        """Local output path, partitioned per recording id."""
        filename = f"{recording.id}_{started_at.strftime('%Y%m%d_%H%M%S')}.{recording.format}"
        return str(self.recordings_dir / recording.id / filename)

    async def start(self, recording: Recording) -> str:
        """Admit a recording and launch its capture without waiting for it.

        Args:
            recording: Recording to capture; its persisted row is authoritative

        Returns:
            The recording id

        Raises:
            AlreadyActive: The registry already holds this id
            AlreadyTerminal: The persisted recording is in a terminal state
            RecordingNotFound: No persisted row exists
            InsufficientResources: Free disk space is below the floor
            CaptureStartError: The capture binary could not be launched
        """
        entry = ActiveCapture(recording_id=recording.id, title=recording.title)
        if not await self.registry.try_insert(entry):
            raise AlreadyActive(f"Recording {recording.id} is already active", recording_id=recording.id)

        try:
            return await self._launch(entry, recording.id)
        finally:
            entry.launched.set()

    async def _launch(self, entry: ActiveCapture, recording_id: str) -> str:
        try:
            current = await run_blocking(self._admit, recording_id)
        except Exception:
            await self.registry.remove(recording_id)
            raise

        recording_logger = get_recording_logger(current.id, current.title)
        started_at = utcnow()
        output_path = self.output_path_for(current, started_at)

        if not await run_blocking(
            self.store.transition_recording,
            current.id,
            [RecordingStatus.PENDING],
            RecordingStatus.RECORDING,
            started_at=started_at,
            file_path=output_path,
            error_message=None
        ):
            await self.registry.remove(current.id)
            raise AlreadyActive(
                f"Recording {current.id} left the pending state before it could start",
                recording_id=current.id
            )

        command = self.command_builder(
            self.config.ffmpeg_path, current.stream_url, output_path, current.quality, current.format
        )
        capture = self.capture_factory(current.id, command, output_path)
        entry.process = capture
        entry.output_path = output_path
        entry.started_at = started_at

        log_recording_step(current.id, current.title, 'capture_launch', 'started',
                           stream_url=current.stream_url, output_path=output_path)
        try:
            await capture.start()
        except CaptureLaunchError as e:
            await self._finish(current.id, RecordingStatus.FAILED, error_message=str(e))
            await self.registry.remove(current.id)
            log_recording_step(current.id, current.title, 'capture_launch', 'failed', error=str(e))
            raise CaptureStartError(str(e), recording_id=current.id) from e

        self._stats['started'] += 1
        entry.phase = 'capturing'
        entry.supervisor = asyncio.create_task(self._supervise(entry, current))
        entry.watchdog = asyncio.create_task(self._watchdog(entry))
        recording_logger.info("Capture started", extra={
            'output_path': output_path,
            'quality': current.quality,
            'format': current.format
        })
        return current.id

    def _admit(self, recording_id: str) -> Recording:
        current = self.store.get_recording(recording_id)
        if current is None:
            raise RecordingNotFound(f"Recording {recording_id} does not exist", recording_id=recording_id)
        if current.status.is_terminal:
            raise AlreadyTerminal(
                f"Recording {recording_id} is already {current.status.value}",
                recording_id=recording_id
            )
        if current.status == RecordingStatus.RECORDING:
            raise AlreadyActive(
                f"Recording {recording_id} is recording in another process",
                recording_id=recording_id
            )
        if self.resource_monitor is not None and not self.resource_monitor.has_capacity_for_capture():
            raise InsufficientResources(
                f"Not enough free disk space to record {recording_id}",
                recording_id=recording_id
            )
        return current

    async def start_by_id(self, recording_id: str) -> str:
        """Start a persisted pending recording.

        Raises:
            RecordingNotFound: No such recording
            RecordingLifecycleError: Any admission error from ``start``
        """
        recording = await run_blocking(self.store.get_recording, recording_id)
        if recording is None:
            raise RecordingNotFound(f"Recording {recording_id} does not exist", recording_id=recording_id)
        return await self.start(recording)

    async def create(self, request: RecordingRequest) -> Recording:
        """Persist a pending recording from a request without starting it.

        Raises:
            UnknownStreamSource: The named source is not configured
        """
        stream_url = request.stream_url
        if request.source:
            stream_url = self.catalog.stream_url(request.source) if self.catalog else None
            if not stream_url:
                raise UnknownStreamSource(f"Unknown stream source: {request.source}")

        recording = await run_blocking(self.store.create_recording, Recording(
            id=str(uuid.uuid4()),
            title=request.title,
            description=request.description,
            stream_url=stream_url,
            quality=request.quality or self.config.default_quality,
            format=request.format or self.config.default_format,
        ))
        logger.info(f"Recording created: {recording.title} ({recording.id})")
        return recording

    async def start_manual(self, request: RecordingRequest) -> str:
        """Create a recording from a manual request and start it.

        Raises:
            UnknownStreamSource: The named source is not configured
            RecordingLifecycleError: Any admission error from ``start``
        """
        recording = await self.create(request)
        return await self.start(recording)

    async def stop(self, recording_id: str, reason: Optional[str] = None) -> Recording:
        """Stop an active capture: signal, wait, then kill.

        A capture still being launched is stopped once the launch settles.
        A capture whose output is already uploading is left to finish, and
        the call returns once it reaches its terminal state.

        Args:
            recording_id: Recording to stop
            reason: Stored on the stopped recording

        Returns:
            The recording after it reached a terminal state

        Raises:
            NotActive: No capture is registered for the recording
        """
        entry = self.registry.get(recording_id)
        if entry is None:
            raise NotActive(f"Recording {recording_id} is not active", recording_id=recording_id)

        if not entry.launched.is_set():
            await entry.launched.wait()
            if self.registry.get(recording_id) is not entry:
                raise NotActive(f"Recording {recording_id} did not start", recording_id=recording_id)

        if entry.phase in ('uploading', 'finishing'):
            logger.info(f"Stop requested for {recording_id} while it finishes, waiting for completion")
            await asyncio.shield(entry.supervisor)
            return await run_blocking(self.store.get_recording, recording_id)

        if entry.stopping:
            await entry.stopped.wait()
            return await run_blocking(self.store.get_recording, recording_id)

        entry.stop_reason = reason or "stopped on request"
        entry.phase = 'stopping'
        recording_logger = get_recording_logger(recording_id, entry.title)
        recording_logger.info("Stopping capture", extra={'reason': entry.stop_reason})

        if entry.watchdog is not None and entry.watchdog is not asyncio.current_task():
            entry.watchdog.cancel()

        forced = False
        try:
            if entry.process is not None:
                forced = await entry.process.terminate(self.config.stop_grace_seconds)
            if entry.supervisor is not None:
                await asyncio.wait({entry.supervisor}, timeout=self.config.stop_grace_seconds)
        finally:
            await self.registry.remove(recording_id)
            stopped = await self._finish(recording_id, RecordingStatus.STOPPED, error_message=reason)
            entry.stopped.set()

        log_recording_step(recording_id, entry.title, 'stop', 'completed',
                           reason=entry.stop_reason, forced_kill=forced,
                           elapsed_seconds=entry.elapsed_seconds())
        if stopped and reason not in KEEP_LOCAL_REASONS:
            self._archive_stopped(entry)
        return await run_blocking(self.store.get_recording, recording_id)

    def _archive_stopped(self, entry: ActiveCapture) -> None:
        """Upload what a stopped capture flushed; the recording stays stopped."""
        if self.upload_pipeline.object_store is None or not entry.output_path:
            return
        if not os.path.exists(entry.output_path) or os.path.getsize(entry.output_path) == 0:
            return
        task = asyncio.create_task(self._upload_stopped(entry))
        self._archives.add(task)
        task.add_done_callback(self._archives.discard)

    async def _upload_stopped(self, entry: ActiveCapture) -> None:
        recording = await run_blocking(self.store.get_recording, entry.recording_id)
        if recording is None:
            return
        result = await self.upload_pipeline.upload(recording, entry.output_path, persist_error=False)
        log_recording_step(entry.recording_id, entry.title, 'archive_stopped',
                           'completed' if result.success else 'failed',
                           storage_key=result.storage_key, error=result.error)

    async def _watchdog(self, entry: ActiveCapture) -> None:
        """Stop the capture once it exceeds the maximum duration."""
        while True:
            remaining = self.config.max_duration_seconds - entry.elapsed_seconds()
            if remaining <= 0:
                break
            await asyncio.sleep(min(remaining, self.config.watchdog_interval_seconds))

        if entry.phase != 'capturing' or entry.stopping:
            return
        get_recording_logger(entry.recording_id, entry.title).warning(
            "Recording exceeded max duration, stopping",
            extra={'max_duration_seconds': self.config.max_duration_seconds}
        )
        try:
            await self.stop(entry.recording_id, reason=MAX_DURATION_REASON)
        except NotActive:
            pass
        except Exception as e:
            logger.error(f"Watchdog failed to stop {entry.recording_id}: {e}", exc_info=True)

    async def _supervise(self, entry: ActiveCapture, recording: Recording) -> None:
        try:
            event = await entry.process.wait()
        except Exception as e:
            event = CaptureFailed(reason=f"Capture supervision error: {e}", error_type="internal")

        try:
            await self._handle_completion(entry, recording, event)
        except Exception as e:
            logger.error(f"Completion handling failed for {recording.id}: {e}", exc_info=True)
            await self._finish(recording.id, RecordingStatus.FAILED, error_message=f"Completion handling failed: {e}")
            await self.registry.remove(recording.id)

    async def _handle_completion(self, entry: ActiveCapture, recording: Recording, event: CaptureEvent) -> None:
        """Drive a capture that ended on its own to its terminal state."""
        if entry.stopping:
            return

        if entry.watchdog is not None:
            entry.watchdog.cancel()

        if isinstance(event, CaptureFailed):
            entry.phase = 'finishing'
            await self._finish(recording.id, RecordingStatus.FAILED, error_message=event.reason)
            await self.registry.remove(recording.id)
            log_recording_step(recording.id, recording.title, 'capture', 'failed',
                               error=event.reason, error_type=event.error_type,
                               return_code=event.return_code)
            return

        entry.phase = 'uploading'
        log_recording_step(recording.id, recording.title, 'capture', 'completed', output_path=event.path)
        result = await self.upload_pipeline.upload(recording, event.path)

        if result.success:
            await self._finish(recording.id, RecordingStatus.COMPLETED)
        else:
            await self._finish(recording.id, RecordingStatus.FAILED, error_message=result.error)
        await self.registry.remove(recording.id)

    async def _finish(self, recording_id: str, status: RecordingStatus, error_message: Optional[str] = None) -> bool:
        return await run_blocking(self._finish_blocking, recording_id, status, error_message)

    def _finish_blocking(self, recording_id: str, status: RecordingStatus,
                         error_message: Optional[str] = None) -> bool:
        """Persist a terminal state, only from Recording."""
        fields = {'completed_at': utcnow()}
        if error_message is not None:
            fields['error_message'] = error_message
        changed = self.store.transition_recording(
            recording_id, [RecordingStatus.RECORDING], status, **fields
        )
        if changed:
            self._stats[status.value] += 1
            log_recording_step(recording_id, None, 'terminal_state', 'completed', state=status.value)
        else:
            logger.warning(f"Recording {recording_id} was not in the recording state; {status.value} not applied")
        return changed

    async def active_snapshot(self) -> List[Dict[str, Any]]:
        """Currently registered captures with their elapsed time."""
        now = utcnow()
        return [entry.to_dict(now) for entry in await self.registry.snapshot()]

    async def delete_recording(self, recording_id: str) -> None:
        """Stop if active, then remove the stored object, the local file and the row.

        Raises:
            RecordingNotFound: No such recording
        """
        if recording_id in self.registry:
            try:
                await self.stop(recording_id, reason=DELETE_REASON)
            except NotActive:
                pass

        recording = await run_blocking(self.store.get_recording, recording_id)
        if recording is None:
            raise RecordingNotFound(f"Recording {recording_id} does not exist", recording_id=recording_id)
        await run_blocking(self._delete_blocking, recording)
        logger.info(f"Recording deleted: {recording_id}")

    def _delete_blocking(self, recording: Recording) -> None:
        if recording.storage_key and self.object_store is not None:
            try:
                self.object_store.delete(recording.storage_key)
            except Exception as e:
                logger.warning(f"Could not delete stored object {recording.storage_key}: {e}")

        if recording.file_path and os.path.exists(recording.file_path):
            try:
                os.remove(recording.file_path)
            except OSError as e:
                logger.warning(f"Could not delete local file: {e}")

        self.store.delete_recording(recording.id)

    def playback_url(self, recording_id: str, ttl_seconds: Optional[int] = None, operation: str = "get_object") -> str:
        """Presigned URL for a recording's stored object.

        Raises:
            RecordingNotFound: No such recording
            NotUploaded: The recording has no stored object
        """
        recording = self.store.get_recording(recording_id)
        if recording is None:
            raise RecordingNotFound(f"Recording {recording_id} does not exist", recording_id=recording_id)
        if not recording.storage_key or self.object_store is None:
            raise NotUploaded(f"Recording {recording_id} has no stored object", recording_id=recording_id)
        return self.object_store.presigned_url(
            recording.storage_key, ttl_seconds or self.config.presigned_url_ttl_seconds, operation
        )

    def recover_orphans(self) -> int:
        """Fail recordings persisted as recording but owned by no capture.

        Returns:
            Number of recordings failed
        """
        recovered = 0
        for recording in self.store.list_recordings(RecordingStatus.RECORDING):
            if recording.id in self.registry:
                continue
            if self._finish_blocking(recording.id, RecordingStatus.FAILED, error_message=RESTART_REASON):
                recovered += 1
        if recovered:
            logger.warning(f"Marked {recovered} interrupted recordings as failed")
        return recovered

    async def shutdown(self) -> None:
        """Stop every active capture and release worker threads."""
        entries = await self.registry.snapshot()
        logger.info(f"Stopping {len(entries)} active recordings")
        for entry in entries:
            try:
                await self.stop(entry.recording_id, reason=SHUTDOWN_REASON)
            except NotActive:
                pass
            except Exception as e:
                logger.error(f"Error stopping recording {entry.recording_id}: {e}")
        if self._archives:
            await asyncio.gather(*self._archives, return_exceptions=True)
        self.upload_pipeline.close()

    def get_statistics(self) -> Dict[str, Any]:
        """Counts of lifecycle outcomes since startup."""
        return {
            'active': len(self.registry),
            'started': self._stats['started'],
            'completed': self._stats['completed'],
            'failed': self._stats['failed'],
            'stopped': self._stats['stopped'],
            'archiving': len(self._archives),
            'since': self._stats['last_reset'].isoformat()
        }
