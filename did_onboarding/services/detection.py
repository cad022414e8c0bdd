"""
DID Onboarding Capture Detector
Face-presence detection on live frames for the liveness step.

Two strategies share the same ``detect(frame) -> bool`` signature:
1. NativeFaceDetector - OpenCV Haar cascade frontal-face detector
2. SkinToneDetector  - pixel heuristic over the center of the frame

CaptureDetector picks the native strategy when it can be loaded and falls
back to the heuristic for the rest of the session on the first failure.
"""

import logging
from typing import Optional, Protocol

import cv2
import numpy as np

from did_onboarding.config import config

logger = logging.getLogger(__name__)


# Source region around the frame center and the size it is sampled down to
SOURCE_REGION = 200
CROP_SIZE = 100


class FaceDetectionStrategy(Protocol):
    """Anything that can tell whether a face is present in a frame."""

    name: str

    def detect(self, frame: np.ndarray) -> bool:
        ...


class NativeFaceDetector:
    """
    Face detection using OpenCV's bundled Haar cascade.

    Frames are BGR images as produced by cv2.VideoCapture / cv2.imdecode.
    """

    name = "native"
    CASCADE_FILE = "haarcascade_frontalface_default.xml"

    def __init__(self, cascade_path: Optional[str] = None, min_size: int = 60):
        path = cascade_path or (cv2.data.haarcascades + self.CASCADE_FILE)
        self.classifier = cv2.CascadeClassifier(path)
        if self.classifier.empty():
            raise RuntimeError(f"Could not load face cascade: {path}")
        self.min_size = (min_size, min_size)

    def detect(self, frame: np.ndarray) -> bool:
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        faces = self.classifier.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=5,
            minSize=self.min_size,
        )
        return len(faces) > 0


def center_crop(frame: np.ndarray) -> np.ndarray:
    """
    Sample the center of the frame as a CROP_SIZE x CROP_SIZE patch.

    Takes a SOURCE_REGION square around the center (clipped to the frame)
    and scales it down, the way the browser preview draws it to a canvas.
    """
    h, w = frame.shape[:2]
    cy, cx = h // 2, w // 2
    half = SOURCE_REGION // 2
    y0, y1 = max(0, cy - half), min(h, cy + half)
    x0, x1 = max(0, cx - half), min(w, cx + half)
    crop = frame[y0:y1, x0:x1]
    if crop.shape[:2] != (CROP_SIZE, CROP_SIZE):
        crop = cv2.resize(crop, (CROP_SIZE, CROP_SIZE), interpolation=cv2.INTER_AREA)
    return crop


def skin_mask(crop: np.ndarray) -> np.ndarray:
    """Boolean mask of skin-tone pixels in a BGR image."""
    pixels = crop[..., :3].astype(np.int16)
    b, g, r = pixels[..., 0], pixels[..., 1], pixels[..., 2]
    return (
        (r > 60) & (g > 40) & (b > 20) &   # Lower bounds
        (r > g) & (r > b) &                # Red dominant
        (r - g > 15) & (r - b > 15) &      # Red significantly higher
        (np.abs(g - b) < 15)               # Green and blue similar
    )


def skin_ratio(frame: np.ndarray) -> float:
    """Share of skin-tone pixels in the center crop of a frame."""
    mask = skin_mask(center_crop(frame))
    return float(mask.mean()) if mask.size else 0.0


class SkinToneDetector:
    """Presence heuristic: enough skin-tone pixels in the frame center."""

    name = "heuristic"

    def __init__(self, threshold: float = None):
        self.threshold = config.SKIN_RATIO_THRESHOLD if threshold is None else threshold

    def detect(self, frame: np.ndarray) -> bool:
        return skin_ratio(frame) > self.threshold


class CaptureDetector:
    """
    Session-scoped face detector with one-way fallback.

    - Uses the native detector if it initializes
    - On any native failure, switches to the heuristic permanently
    - Never raises: heuristic errors count as "no face"
    """

    def __init__(
        self,
        native: Optional[FaceDetectionStrategy] = None,
        heuristic: Optional[FaceDetectionStrategy] = None,
        prefer_native: bool = True,
    ):
        self.heuristic = heuristic or SkinToneDetector()
        self.strategy: FaceDetectionStrategy = self.heuristic

        if native is not None:
            self.strategy = native
        elif prefer_native:
            try:
                self.strategy = NativeFaceDetector()
                logger.info("[+] Face detector initialized with native cascade")
            except Exception as e:
                logger.warning(f"[!] Native face detection unavailable, using heuristic: {e}")

        self.fallback_count = 0

    @property
    def strategy_name(self) -> str:
        return self.strategy.name

    def detect(self, frame: Optional[np.ndarray]) -> bool:
        """Report whether a face is present in the frame."""
        if frame is None or frame.size == 0:
            return False

        if self.strategy is not self.heuristic:
            try:
                return bool(self.strategy.detect(frame))
            except Exception as e:
                self.fallback_count += 1
                logger.warning(f"[!] {self.strategy.name} face detection failed, using heuristic")
                logger.warning(f"   Error: {e}")
                self.strategy = self.heuristic

        try:
            return bool(self.heuristic.detect(frame))
        except Exception as e:
            logger.debug(f"Heuristic face detection error: {e}")
            return False
