"""Supervised ffmpeg capture processes."""

import asyncio
import json
import logging
import os
import re
import subprocess
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import mutagen

logger = logging.getLogger(__name__)

# ffmpeg -q:v presets for the named quality levels; anything else passes through
QUALITY_PRESETS = {
    'best': '1',
    'good': '3',
    'medium': '5',
}

STDERR_TAIL_LINES = 20


class CaptureLaunchError(Exception):
    """Raised when the capture binary cannot be started."""

    def __init__(self, message: str, error_type: str = "filesystem"):
        super().__init__(message)
        self.error_type = error_type


@dataclass(frozen=True)
class CaptureFinished:
    """The capture exited cleanly and produced a non-empty file."""
    path: str


@dataclass(frozen=True)
class CaptureFailed:
    """The capture exited abnormally."""
    reason: str
    error_type: str = "stream"
    return_code: Optional[int] = None


CaptureEvent = Union[CaptureFinished, CaptureFailed]


def build_ffmpeg_command(
    ffmpeg_path: str,
    url: str,
    output_path: str,
    quality: str = "best",
    output_format: str = "mp4"
) -> List[str]:
    """Build the ffmpeg command for stream capture.

    Progress is written as key=value lines to stdout, diagnostics to stderr.
    """
    cmd = [
        ffmpeg_path,
        '-hide_banner',
        '-nostdin',
        '-loglevel', 'warning',
        '-nostats',
        '-progress', 'pipe:1',
        '-user_agent', 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36',
        '-timeout', '30000000',  # microseconds
        '-reconnect', '1',
        '-reconnect_at_eof', '1',
        '-reconnect_streamed', '1',
        '-reconnect_delay_max', '2',
        '-i', url,
        '-c', 'copy',
        '-bsf:a', 'aac_adtstoasc',
        '-q:v', QUALITY_PRESETS.get(quality, quality),
        '-f', output_format,
        '-y',
        output_path
    ]
    return cmd


def analyze_ffmpeg_error(stderr_text: str, return_code: Optional[int]) -> CaptureFailed:
    """Classify ffmpeg diagnostics into a typed failure."""
    stderr_lower = stderr_text.lower()

    network_patterns = [
        r'connection.*refused',
        r'connection.*timed out',
        r'network.*unreachable',
        r'temporary failure in name resolution',
        r'no route to host',
        r'connection reset by peer',
        r'server returned 4\d\d',
        r'server returned 5\d\d',
        r'http error 4\d\d',
        r'http error 5\d\d'
    ]
    stream_patterns = [
        r'invalid data found when processing input',
        r'stream.*not found',
        r'protocol not found',
        r'invalid url',
        r'end of file'
    ]
    fs_patterns = [
        r'permission denied',
        r'no space left on device',
        r'read-only file system'
    ]

    detail = stderr_text.strip() or "no diagnostic output"
    for error_type, patterns in (('network', network_patterns),
                                 ('filesystem', fs_patterns),
                                 ('stream', stream_patterns)):
        for pattern in patterns:
            if re.search(pattern, stderr_lower):
                return CaptureFailed(
                    reason=f"{error_type.capitalize()} error during capture (code {return_code}): {detail}",
                    error_type=error_type,
                    return_code=return_code
                )

    return CaptureFailed(
        reason=f"Capture failed with return code {return_code}: {detail}",
        error_type="stream",
        return_code=return_code
    )


def read_duration(file_path: str, ffprobe_path: str = "ffprobe") -> int:
    """Measure a media file's duration in whole seconds.

    Tries mutagen first, then ffprobe. Any failure yields 0.
    """
    try:
        media = mutagen.File(file_path)
        if media is not None and media.info is not None and media.info.length:
            return int(round(media.info.length))
    except Exception as e:
        logger.debug(f"mutagen could not read {file_path}: {e}")

    try:
        result = subprocess.run(
            [ffprobe_path, '-v', 'error', '-show_entries', 'format=duration', '-of', 'json', file_path],
            capture_output=True,
            text=True,
            timeout=60
        )
        if result.returncode == 0:
            duration = json.loads(result.stdout).get('format', {}).get('duration')
            if duration:
                return int(round(float(duration)))
        logger.warning(f"ffprobe could not measure {file_path}: {result.stderr.strip()}")
    except (OSError, ValueError, subprocess.TimeoutExpired) as e:
        logger.warning(f"Could not get video duration for {file_path}: {e}")
    return 0


class CaptureProcess:
    """One external capture subprocess writing a single output file.

    ``start()`` launches it; ``wait()`` resolves to exactly one
    ``CaptureFinished`` or ``CaptureFailed`` event.
    """

    def __init__(self, recording_id: str, command: List[str], output_path: str):
        self.recording_id = recording_id
        self.command = command
        self.output_path = output_path
        self.progress: Dict[str, str] = {}
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        self._supervisor: Optional[asyncio.Task] = None
        self._terminating = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        """Launch the subprocess.

        Raises:
            CaptureLaunchError: If the binary is missing or not executable
        """
        Path(self.output_path).parent.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Executing capture command: {' '.join(self.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            raise CaptureLaunchError(f"Capture binary not found: {self.command[0]}")
        except PermissionError as e:
            raise CaptureLaunchError(f"Permission denied launching capture: {e}")
        except OSError as e:
            raise CaptureLaunchError(f"System error launching capture: {e}")

        logger.info(f"Started capture process {self._process.pid} for {self.recording_id}", extra={
            'recording_id': self.recording_id,
            'pid': self._process.pid,
            'output_path': self.output_path
        })
        self._supervisor = asyncio.create_task(self._supervise())

    async def wait(self) -> CaptureEvent:
        """Wait for the process to exit and return its completion event."""
        if self._supervisor is None:
            raise RuntimeError("Capture process was never started")
        return await asyncio.shield(self._supervisor)

    async def terminate(self, grace_seconds: float) -> bool:
        """Ask the process to exit, killing it after the grace period.

        Returns:
            True if the process had to be killed
        """
        if not self.is_running:
            return False
        self._terminating = True
        logger.info(f"Terminating capture process {self.pid} for {self.recording_id}")
        try:
            self._process.terminate()
        except ProcessLookupError:
            return False
        try:
            await asyncio.wait_for(self._process.wait(), timeout=grace_seconds)
            return False
        except asyncio.TimeoutError:
            logger.warning(f"Force killing capture process {self.pid} for {self.recording_id}")
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            await self._process.wait()
            return True

    async def _read_progress(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode('utf-8', errors='ignore').strip()
            key, sep, value = text.partition('=')
            if sep:
                self.progress[key] = value
                if key == 'progress':
                    logger.debug(f"Capture progress for {self.recording_id}", extra={
                        'recording_id': self.recording_id,
                        'out_time': self.progress.get('out_time'),
                        'total_size': self.progress.get('total_size')
                    })

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode('utf-8', errors='ignore').rstrip()
            if text:
                self._stderr_tail.append(text)

    async def _supervise(self) -> CaptureEvent:
        process = self._process
        await asyncio.gather(
            self._read_progress(process.stdout),
            self._read_stderr(process.stderr)
        )
        return_code = await process.wait()
        stderr_text = "\n".join(self._stderr_tail)

        logger.debug(f"Capture process for {self.recording_id} exited with code {return_code}")

        if return_code == 0:
            if os.path.exists(self.output_path) and os.path.getsize(self.output_path) > 0:
                return CaptureFinished(path=self.output_path)
            return CaptureFailed(
                reason=f"Capture completed but output file is missing or empty: {self.output_path}",
                error_type="filesystem",
                return_code=return_code
            )

        if self._terminating:
            return CaptureFailed(
                reason="Capture terminated on request",
                error_type="terminated",
                return_code=return_code
            )
        return analyze_ffmpeg_error(stderr_text, return_code)
