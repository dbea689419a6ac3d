"""Upload pipeline moving finished captures into object storage."""

import asyncio
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from match_recorder.models.domain import Recording
from match_recorder.services.capture import read_duration
from match_recorder.services.interfaces import ObjectStore, PersistenceStore
from match_recorder.services.persistence import run_blocking
from match_recorder.utils.logging_config import get_recording_logger, log_performance_metric

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    '.mp4': 'video/mp4',
    '.mkv': 'video/x-matroska',
    '.avi': 'video/x-msvideo',
    '.mov': 'video/quicktime',
    '.flv': 'video/x-flv',
    '.webm': 'video/webm',
    '.m4v': 'video/x-m4v',
    '.ts': 'video/mp2t',
    '.mpegts': 'video/mp2t',
}


def content_type_for(path: str) -> str:
    return CONTENT_TYPES.get(os.path.splitext(path)[1].lower(), 'application/octet-stream')


@dataclass
class UploadResult:
    """Outcome of one upload attempt."""
    success: bool
    local_path: str
    storage_key: Optional[str] = None
    storage_url: Optional[str] = None
    file_size: int = 0
    duration: int = 0
    error: Optional[str] = None


class UploadPipeline:
    """Pushes a finished capture to the object store and records the locator.

    ``upload`` never raises; the caller decides the recording's terminal
    state from the returned ``UploadResult``.
    """

    def __init__(
        self,
        object_store: Optional[ObjectStore],
        store: PersistenceStore,
        key_prefix: str = "recordings",
        ffprobe_path: str = "ffprobe"
    ):
        self.object_store = object_store
        self.store = store
        self.key_prefix = key_prefix.strip('/')
        self.ffprobe_path = ffprobe_path
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="upload")

    def close(self) -> None:
        """Release the upload worker threads."""
        self._executor.shutdown(wait=False)

    def build_key(self, recording_id: str, local_path: str) -> str:
        """Object key: <prefix>/<recording id>/<original filename>."""
        filename = os.path.basename(local_path)
        if self.key_prefix:
            return f"{self.key_prefix}/{recording_id}/{filename}"
        return f"{recording_id}/{filename}"

    async def upload(self, recording: Recording, local_path: str, persist_error: bool = True) -> UploadResult:
        """Upload the file and persist the outcome on the recording.

        With ``persist_error`` off a failed upload is only logged, leaving the
        recording's error field untouched.
        """
        recording_logger = get_recording_logger(recording.id, recording.title)
        started = time.monotonic()
        try:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(self._executor, self._upload_blocking, recording, local_path)
        except Exception as e:
            recording_logger.error(f"Upload pipeline error: {e}", exc_info=True)
            result = UploadResult(success=False, local_path=local_path, error=f"Upload failed: {e}")

        if result.success:
            log_performance_metric('upload_pipeline', 'upload', time.monotonic() - started,
                                   recording_id=recording.id, file_size=result.file_size)
            recording_logger.info("Upload completed", extra={
                'storage_key': result.storage_key,
                'file_size': result.file_size,
                'duration_seconds': result.duration
            })
        else:
            if persist_error:
                await run_blocking(self._record_failure, recording.id, result)
            recording_logger.error("Upload failed, local file kept for recovery", extra={
                'local_path': local_path,
                'error': result.error
            })
        return result

    def _upload_blocking(self, recording: Recording, local_path: str) -> UploadResult:
        if not os.path.exists(local_path):
            return UploadResult(success=False, local_path=local_path,
                                error=f"Local file does not exist: {local_path}")

        file_size = os.path.getsize(local_path)
        duration = read_duration(local_path, self.ffprobe_path)
        key = self.build_key(recording.id, local_path)

        if self.object_store is None:
            return UploadResult(success=False, local_path=local_path, file_size=file_size,
                                duration=duration, error="Object storage is not configured")

        try:
            stored = self.object_store.put(key, local_path, content_type_for(local_path))
        except Exception as e:
            return UploadResult(success=False, local_path=local_path, file_size=file_size,
                                duration=duration, error=f"Upload failed: {e}")

        self.store.update_recording(
            recording.id,
            storage_key=stored.key,
            storage_url=stored.url,
            file_size=stored.size or file_size,
            duration=duration
        )

        try:
            os.remove(local_path)
            self.store.update_recording(recording.id, file_path=None)
            logger.info(f"Local file cleaned up: {local_path}")
        except OSError as e:
            # The object is safely stored; the stale local copy stays referenced
            logger.warning(f"Could not delete local file {local_path}: {e}")

        return UploadResult(
            success=True,
            local_path=local_path,
            storage_key=stored.key,
            storage_url=stored.url,
            file_size=stored.size or file_size,
            duration=duration
        )

    def _record_failure(self, recording_id: str, result: UploadResult) -> None:
        try:
            self.store.update_recording(
                recording_id,
                file_path=result.local_path,
                file_size=result.file_size,
                duration=result.duration,
                error_message=result.error
            )
        except Exception as e:
            logger.error(f"Failed to persist upload error for {recording_id}: {e}")
