"""
DID Onboarding Auto-Capture Controller
Turns face-presence samples into a single still-frame capture.

States:
- IDLE:      polling, no face yet (or face lost)
- ARMED:     face present, countdown running
- CAPTURED:  still frame committed; terminal
- CANCELLED: user cancelled; terminal

The controller owns two scheduled tasks while it runs: the detection poll
and, while armed, the countdown. Both are cancelled on disarm, capture,
cancel and close, and the frame source is released exactly once.
Frame reads and detection run in a worker thread.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Optional, Callable, Dict, Any

import numpy as np

from did_onboarding.config import config
from did_onboarding.errors import DeviceAccessError
from did_onboarding.models import DetectionSample
from did_onboarding.services.camera import FrameSource, frame_to_data_uri
from did_onboarding.services.detection import CaptureDetector

logger = logging.getLogger(__name__)


class CaptureState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    CAPTURED = "captured"
    CANCELLED = "cancelled"


ACTIVE_STATES = (CaptureState.IDLE, CaptureState.ARMED)


class AutoCaptureController:
    """
    Auto-capture state machine for one liveness capture cycle.

    ``on_sample`` and ``tick`` are the transitions; ``start`` schedules them
    on the running event loop (detection every ``detection_interval``
    seconds, countdown every ``tick_interval`` seconds).
    """

    def __init__(
        self,
        detector: CaptureDetector,
        source: FrameSource,
        auto_capture: bool = True,
        countdown_start: int = None,
        detection_interval: float = None,
        tick_interval: float = None,
        encoder: Callable[[np.ndarray], str] = frame_to_data_uri,
    ):
        self.detector = detector
        self.source = source
        self.auto_capture = auto_capture
        self.countdown_start = config.COUNTDOWN_START if countdown_start is None else countdown_start
        self.detection_interval = config.DETECTION_INTERVAL if detection_interval is None else detection_interval
        self.tick_interval = config.COUNTDOWN_TICK if tick_interval is None else tick_interval
        self.encoder = encoder

        self.state = CaptureState.IDLE
        self.countdown: Optional[int] = None
        self.face_detected = False
        self.image_ref: Optional[str] = None
        self.capture_count = 0

        self._started = False
        self._device_open = False
        self._poll_task: Optional[asyncio.Task] = None
        self._countdown_task: Optional[asyncio.Task] = None
        self._result: Optional[asyncio.Future] = None

    # ============ Lifecycle ============

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """
        Acquire the frame source and begin polling for a face.

        Raises:
            DeviceAccessError: if the capture device cannot be opened
        """
        if self._started:
            raise RuntimeError("Capture session already started")

        try:
            await asyncio.to_thread(self.source.open)
        except DeviceAccessError:
            raise
        except Exception as e:
            raise DeviceAccessError(f"Could not access camera: {e}") from e

        self._device_open = True
        self._started = True
        self._result = asyncio.get_running_loop().create_future()
        self._poll_task = asyncio.create_task(self._poll_loop(), name="liveness-detection")
        logger.info(f"Capture session started (detector: {self.detector.strategy_name})")

    async def wait_for_capture(self) -> Optional[str]:
        """Wait for the captured image reference; None if cancelled."""
        if self._result is None:
            raise RuntimeError("Capture session not started")
        return await asyncio.shield(self._result)

    def cancel(self) -> None:
        """User cancelled: stop everything and release the device."""
        if self.state not in ACTIVE_STATES:
            return
        self.state = CaptureState.CANCELLED
        self.countdown = None
        self._stop_tasks()
        self._release_device()
        self._resolve(None)
        logger.info("Capture session cancelled")

    async def close(self) -> None:
        """Teardown: cancel if still active and wait for scheduled tasks to finish."""
        self.cancel()
        pending = [
            task for task in (self._poll_task, self._countdown_task)
            if task is not None and not task.done() and task is not _current_task()
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._release_device()

    # ============ Transitions ============

    def set_auto_capture(self, enabled: bool) -> None:
        self.auto_capture = enabled
        if not enabled and self.state is CaptureState.ARMED:
            self._disarm()

    def on_sample(self, sample: DetectionSample) -> None:
        """Apply one presence sample."""
        if self.state not in ACTIVE_STATES:
            return

        self.face_detected = sample.present

        if sample.present:
            if self.state is CaptureState.IDLE and self.auto_capture:
                self.state = CaptureState.ARMED
                self.countdown = self.countdown_start
                self._schedule_countdown()
        elif self.state is CaptureState.ARMED:
            self._disarm()

    def tick(self) -> Optional[str]:
        """Advance the countdown by one step; captures when it reaches zero."""
        if self.state is not CaptureState.ARMED:
            return None
        self.countdown -= 1
        if self.countdown > 0:
            return None
        return self._capture()

    def capture_now(self) -> Optional[str]:
        """Manual capture, regardless of face presence."""
        if self.state not in ACTIVE_STATES:
            return None
        return self._capture()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "countdown": self.countdown,
            "face_detected": self.face_detected,
            "auto_capture": self.auto_capture,
            "detector": self.detector.strategy_name,
            "captured": self.image_ref is not None,
        }

    # ============ Internals ============

    def _capture(self) -> Optional[str]:
        frame = self.source.read()
        if frame is None:
            logger.warning("[!] No frame available for capture")
            self._disarm()
            return None

        image_ref = self.encoder(frame)

        self.state = CaptureState.CAPTURED
        self.countdown = None
        self.image_ref = image_ref
        self.capture_count += 1
        self._stop_tasks()
        self._release_device()
        self._resolve(image_ref)
        logger.info("Liveness frame captured")
        return image_ref

    def _disarm(self) -> None:
        self.state = CaptureState.IDLE
        self.countdown = None
        _cancel(self._countdown_task)
        self._countdown_task = None

    def _schedule_countdown(self) -> None:
        if not self._started:
            return
        _cancel(self._countdown_task)
        self._countdown_task = asyncio.create_task(self._countdown_loop(), name="liveness-countdown")

    async def _countdown_loop(self) -> None:
        while self.state is CaptureState.ARMED:
            await asyncio.sleep(self.tick_interval)
            self.tick()

    def _observe(self) -> bool:
        """Read one frame and run detection on it. Runs in a worker thread."""
        try:
            frame = self.source.read()
        except Exception as e:
            logger.warning(f"[!] Frame read failed: {e}")
            frame = None
        return self.detector.detect(frame)

    async def _poll_loop(self) -> None:
        while self.state in ACTIVE_STATES:
            present = await asyncio.to_thread(self._observe)
            self.on_sample(DetectionSample(present=present, timestamp=time.monotonic()))
            if self.state not in ACTIVE_STATES:
                break
            await asyncio.sleep(self.detection_interval)

    def _stop_tasks(self) -> None:
        _cancel(self._poll_task)
        _cancel(self._countdown_task)

    def _release_device(self) -> None:
        if self._device_open:
            self._device_open = False
            self.source.release()

    def _resolve(self, value: Optional[str]) -> None:
        if self._result is not None and not self._result.done():
            self._result.set_result(value)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def _cancel(task: Optional[asyncio.Task]) -> None:
    """Cancel a scheduled task unless it is the one running this code."""
    if task is not None and not task.done() and task is not _current_task():
        task.cancel()
