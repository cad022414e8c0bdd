"""
DID Onboarding Sessions
In-memory registry of verification sessions driven by the HTTP API.

Identity data lives only in memory for the duration of a session; the
published metadata document is the only thing persisted.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Dict

from did_onboarding.config import config
from did_onboarding.errors import ValidationError
from did_onboarding.services.camera import FrameSource, PushedFrameSource, WebcamSource, WebcamConfig
from did_onboarding.services.capture import AutoCaptureController
from did_onboarding.services.detection import CaptureDetector
from did_onboarding.services.extraction import ExtractionEngine, OCRCapability, create_ocr_capability
from did_onboarding.services.ipfs import PinataStore
from did_onboarding.services.metadata import MetadataPublisher
from did_onboarding.workflow import StepWorkflowController, WorkflowStep, parse_step, run_liveness_step

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """Auto-generate a unique session ID."""
    return f"session_{uuid.uuid4().hex[:12]}"


class VerificationSession:
    """One user's pass through the verification steps."""

    def __init__(
        self,
        session_id: str,
        ocr: OCRCapability,
        camera_source: str = None,
    ):
        self.session_id = session_id
        self.created_at = datetime.now(timezone.utc)
        self.last_active = time.monotonic()
        self.camera_source = (camera_source or config.CAMERA_SOURCE).lower()

        self.workflow = StepWorkflowController()
        self.extraction = ExtractionEngine(ocr)

        self.detector: Optional[CaptureDetector] = None
        self.frame_source: Optional[FrameSource] = None
        self.capture: Optional[AutoCaptureController] = None
        self.liveness_task: Optional[asyncio.Task] = None
        self.liveness_error: Optional[str] = None

    def _new_frame_source(self) -> FrameSource:
        if self.camera_source == "webcam":
            return WebcamSource(WebcamConfig(device_id=config.CAMERA_DEVICE_ID))
        return PushedFrameSource()

    async def start_liveness(self, auto_capture: bool = True) -> AutoCaptureController:
        """
        Open the camera and start the capture cycle in the background.

        Raises:
            DeviceAccessError: if the camera cannot be opened
            ValidationError: if a capture cycle is already running
        """
        self.workflow.require_active(WorkflowStep.LIVENESS)
        if self.liveness_task is not None and not self.liveness_task.done():
            raise ValidationError("A capture session is already running")
        if self.workflow.record.liveness_image_ref:
            raise ValidationError("A liveness image is already captured; retake to capture again")

        # One detector per session: a native failure downgrades it for good
        if self.detector is None:
            self.detector = CaptureDetector()

        frame_source = self._new_frame_source()
        capture = AutoCaptureController(self.detector, frame_source, auto_capture=auto_capture)
        await capture.start()

        self.frame_source = frame_source
        self.capture = capture
        self.liveness_error = None
        self.liveness_task = asyncio.create_task(
            self._run_liveness(capture), name=f"liveness-{self.session_id}"
        )
        return capture

    async def _run_liveness(self, controller: AutoCaptureController) -> None:
        try:
            await run_liveness_step(self.workflow, controller)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Liveness step failed for {self.session_id}: {e}")
            self.liveness_error = str(e)

    async def stop_liveness(self) -> None:
        """Cancel the capture cycle, if any, and wait for it to unwind."""
        if self.capture is not None:
            self.capture.cancel()
        if self.liveness_task is not None and not self.liveness_task.done():
            self.liveness_task.cancel()
            await asyncio.gather(self.liveness_task, return_exceptions=True)
        if self.capture is not None:
            await self.capture.close()

    async def retake_liveness(self) -> None:
        await self.stop_liveness()
        self.workflow.retake_liveness()
        self.capture = None
        self.frame_source = None

    async def go_back(self) -> WorkflowStep:
        await self.stop_liveness()
        return self.workflow.go_back()

    async def reenter(self, step) -> None:
        """Redo a step, stopping any capture cycle the session is leaving."""
        target = parse_step(step)
        if target is WorkflowStep.LIVENESS:
            await self.retake_liveness()
            return
        if target > self.workflow.active_step:
            raise ValidationError(f"Cannot re-enter {target.slug} before reaching it")
        await self.stop_liveness()
        self.workflow.reenter(target)

    def touch(self) -> None:
        self.last_active = time.monotonic()

    def idle_for(self, now: float = None) -> float:
        return (time.monotonic() if now is None else now) - self.last_active

    async def close(self) -> None:
        self.workflow.close()
        await self.stop_liveness()


class SessionRegistry:
    """Holds the active sessions and the shared IPFS store."""

    def __init__(
        self,
        store: Optional[PinataStore] = None,
        ocr: Optional[OCRCapability] = None,
        camera_source: str = None,
        idle_timeout: float = None,
    ):
        self._sessions: Dict[str, VerificationSession] = {}
        self.idle_timeout = config.SESSION_IDLE_TIMEOUT if idle_timeout is None else idle_timeout
        self._store = store
        self._ocr = ocr
        self.camera_source = camera_source

    @property
    def store(self) -> PinataStore:
        if self._store is None:
            self._store = PinataStore()
        return self._store

    @property
    def ocr(self) -> OCRCapability:
        if self._ocr is None:
            self._ocr = create_ocr_capability()
        return self._ocr

    @property
    def publisher(self) -> MetadataPublisher:
        return MetadataPublisher(self.store)

    def create(self) -> VerificationSession:
        session = VerificationSession(generate_session_id(), self.ocr, self.camera_source)
        self._sessions[session.session_id] = session
        logger.info(f"Created verification session {session.session_id}")
        return session

    def get(self, session_id: str) -> Optional[VerificationSession]:
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    async def remove(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        logger.info(f"Closed verification session {session_id}")
        return True

    async def expire_idle(self, now: float = None) -> int:
        """Close sessions nobody has touched for ``idle_timeout`` seconds."""
        if self.idle_timeout <= 0:
            return 0
        expired = [
            session_id for session_id, session in self._sessions.items()
            if session.idle_for(now) > self.idle_timeout
        ]
        for session_id in expired:
            logger.info(f"Expiring idle verification session {session_id}")
            await self.remove(session_id)
        return len(expired)

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.remove(session_id)
        if self._store is not None:
            await self._store.close()
            self._store = None


# Global session registry
session_registry = SessionRegistry()
