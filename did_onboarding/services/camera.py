"""
DID Onboarding Frame Sources
Capture devices feeding the liveness step.

- WebcamSource: local camera through cv2.VideoCapture
- PushedFrameSource: latest frame uploaded by a browser client
"""

import base64
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

import cv2
import numpy as np

from did_onboarding.errors import DeviceAccessError

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    """A capture device that is opened once and released once."""

    def open(self) -> None:
        ...

    def read(self) -> Optional[np.ndarray]:
        ...

    def release(self) -> None:
        ...


@dataclass
class WebcamConfig:
    """Configuration for webcam capture."""
    width: int = 640
    height: int = 480
    fps: int = 30
    device_id: int = 0


class WebcamSource:
    """Local webcam accessed through OpenCV."""

    def __init__(self, webcam_config: Optional[WebcamConfig] = None):
        self.config = webcam_config or WebcamConfig()
        self._cap: Optional[cv2.VideoCapture] = None
        # read() runs on a worker thread while release() may come from the loop
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._cap is not None and self._cap.isOpened()

    def open(self) -> None:
        if self._cap is not None:
            self.release()

        cap = cv2.VideoCapture(self.config.device_id)
        if not cap.isOpened():
            cap.release()
            raise DeviceAccessError(
                f"Could not access camera {self.config.device_id}. "
                "Please make sure camera permissions are granted."
            )

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
        cap.set(cv2.CAP_PROP_FPS, self.config.fps)
        self._cap = cap
        logger.info(f"Camera {self.config.device_id} opened")

    def read(self) -> Optional[np.ndarray]:
        with self._lock:
            if not self.is_open:
                return None
            ok, frame = self._cap.read()
        return frame if ok else None

    def release(self) -> None:
        with self._lock:
            cap, self._cap = self._cap, None
        if cap is not None:
            cap.release()
            logger.info(f"Camera {self.config.device_id} released")


class PushedFrameSource:
    """
    Frame source fed by a remote client.

    The browser owns the physical camera and uploads preview frames; the
    newest one is what detection and capture read.
    """

    def __init__(self):
        self._frame: Optional[np.ndarray] = None
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._frame = None
        self._open = True

    def push(self, frame: np.ndarray) -> None:
        """Store the latest frame; ignored once the source is released."""
        if self._open:
            self._frame = frame

    def read(self) -> Optional[np.ndarray]:
        return self._frame if self._open else None

    def release(self) -> None:
        self._open = False
        self._frame = None


def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes (JPEG/PNG) into a BGR frame."""
    if not data:
        return None
    arr = np.frombuffer(data, dtype=np.uint8)
    return cv2.imdecode(arr, cv2.IMREAD_COLOR)


def frame_to_data_uri(frame: np.ndarray, fmt: str = "png") -> str:
    """Encode a BGR frame as an image data URI."""
    ok, buffer = cv2.imencode(f".{fmt}", frame)
    if not ok:
        raise ValueError("Could not encode captured frame")
    encoded = base64.b64encode(buffer.tobytes()).decode("ascii")
    return f"data:image/{fmt};base64,{encoded}"
