"""Fakes shared by the test suite."""

import asyncio
import os
from pathlib import Path
from typing import Dict, List, Optional

from match_recorder.services.capture import CaptureFailed, CaptureFinished, CaptureLaunchError
from match_recorder.services.interfaces import StoredObject
from match_recorder.services.object_store import ObjectStoreError


class FakeObjectStore:
    """In-memory ObjectStore recording every call."""

    def __init__(self):
        self.objects: Dict[str, dict] = {}
        self.deleted: List[str] = []
        self.fail_puts = False

    def put(self, key: str, local_path: str, content_type: str) -> StoredObject:
        if self.fail_puts:
            raise ObjectStoreError("Upload to s3://test-bucket failed: endpoint unreachable")
        size = os.path.getsize(local_path)
        self.objects[key] = {'content_type': content_type, 'size': size, 'data': Path(local_path).read_bytes()}
        return StoredObject(key=key, url=f"https://objects.example.com/test-bucket/{key}", size=size)

    def delete(self, key: str) -> None:
        self.deleted.append(key)
        self.objects.pop(key, None)

    def presigned_url(self, key: str, ttl_seconds: int, operation: str = "get_object") -> str:
        return f"https://objects.example.com/test-bucket/{key}?op={operation}&expires={ttl_seconds}"


class FakeCapture:
    """Stand-in for CaptureProcess driven explicitly by the test."""

    def __init__(self, recording_id: str, command: List[str], output_path: str,
                 launch_error: Optional[str] = None, exit_on_terminate: bool = True):
        self.recording_id = recording_id
        self.command = command
        self.output_path = output_path
        self.launch_error = launch_error
        self.exit_on_terminate = exit_on_terminate
        self.started = False
        self.terminate_calls = 0
        self.progress = {}
        self._done = asyncio.get_running_loop().create_future()

    @property
    def pid(self):
        return 4242 if self.started else None

    @property
    def is_running(self) -> bool:
        return self.started and not self._done.done()

    async def start(self) -> None:
        await asyncio.sleep(0)
        if self.launch_error:
            raise CaptureLaunchError(self.launch_error)
        self.started = True

    async def wait(self):
        return await asyncio.shield(self._done)

    async def terminate(self, grace_seconds: float) -> bool:
        self.terminate_calls += 1
        if not self.is_running:
            return False
        if self.exit_on_terminate:
            self._done.set_result(CaptureFailed(reason="Capture terminated on request", error_type="terminated"))
            return False
        # Ignores the polite request; simulate the forced kill after the grace period
        await asyncio.sleep(grace_seconds)
        self._done.set_result(CaptureFailed(reason="killed", error_type="terminated", return_code=-9))
        return True

    def finish(self, payload: bytes = b"\x00" * 2048) -> None:
        """Exit cleanly after writing the output file."""
        Path(self.output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(self.output_path).write_bytes(payload)
        self._done.set_result(CaptureFinished(path=self.output_path))

    def fail(self, reason: str = "Network error during capture (code 1): Connection refused") -> None:
        self._done.set_result(CaptureFailed(reason=reason, error_type="network", return_code=1))


class FakeCaptureFactory:
    """Capture factory handed to the lifecycle manager; keeps every capture it built."""

    def __init__(self):
        self.captures: List[FakeCapture] = []
        self.launch_error: Optional[str] = None
        self.exit_on_terminate = True

    def __call__(self, recording_id: str, command: List[str], output_path: str) -> FakeCapture:
        capture = FakeCapture(recording_id, command, output_path,
                              launch_error=self.launch_error,
                              exit_on_terminate=self.exit_on_terminate)
        self.captures.append(capture)
        return capture

    def for_recording(self, recording_id: str) -> FakeCapture:
        matches = [capture for capture in self.captures if capture.recording_id == recording_id]
        assert matches, f"no capture built for {recording_id}"
        return matches[-1]


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll until predicate() is truthy or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)
