"""
Test doubles shared by the pipeline tests.
"""

from typing import Optional, Any, Dict, List

import numpy as np

from did_onboarding.errors import DeviceAccessError
from did_onboarding.workflow import StepWorkflowController, WorkflowStep


SKIN_BGR = (110, 120, 200)       # r=200, g=120, b=110
BACKGROUND_BGR = (30, 30, 30)

SAMPLE_ADDRESS = "0x52908400098527886e0f7030069857d2e4169ee7"
SAMPLE_ADDRESS_CHECKSUM = "0x52908400098527886E0F7030069857D2E4169EE7"

LIVENESS_IMAGE = "data:image/png;base64,AAAA"


def make_frame(skin_fraction: float, size: int = 100) -> np.ndarray:
    """Square BGR frame whose top rows are skin-toned."""
    frame = np.full((size, size, 3), BACKGROUND_BGR, dtype=np.uint8)
    rows = int(round(size * skin_fraction))
    frame[:rows] = SKIN_BGR
    return frame


class FakeFrameSource:
    """Frame source that counts opens and releases."""

    def __init__(self, frame: Optional[np.ndarray] = None, fail_open: bool = False):
        self.frame = frame
        self.fail_open = fail_open
        self.opens = 0
        self.releases = 0

    def open(self) -> None:
        if self.fail_open:
            raise DeviceAccessError("Camera permission denied")
        self.opens += 1

    def read(self) -> Optional[np.ndarray]:
        return self.frame

    def release(self) -> None:
        self.releases += 1


class StubDetector:
    """Detector reporting a fixed presence value."""

    strategy_name = "stub"

    def __init__(self, present: bool = True):
        self.present = present
        self.calls = 0

    def detect(self, frame) -> bool:
        self.calls += 1
        return self.present


def workflow_at(step: WorkflowStep) -> StepWorkflowController:
    """Controller with every step before ``step`` completed."""
    workflow = StepWorkflowController()
    fills = {
        WorkflowStep.WALLET_CONNECT: {"wallet_address": SAMPLE_ADDRESS_CHECKSUM},
        WorkflowStep.EXTRACTION: {
            "full_name": "Jane Doe",
            "document_number": "X1",
            "document_type": "Passport",
            "date_of_birth": "1985-02-03",
            "gender": "Female",
            "issuing_country": "Canada",
            "extracted_info": True,
            "extraction_confidence": 0.9,
        },
        WorkflowStep.LIVENESS: {"liveness_image_ref": LIVENESS_IMAGE, "liveness_verified": True},
    }
    while workflow.active_step < step:
        workflow.merge(fills[workflow.active_step])
        workflow.mark_step_completed(workflow.active_step)
        workflow.advance()
    return workflow


JANE_PAYLOAD: Dict[str, Any] = {
    "fields": {
        "fullName": "Jane Doe",
        "idNumber": "X1",
        "dateOfBirth": "1985-02-03",
        "gender": "Female",
        "metadata": {"documentType": "Passport", "issuingCountry": "Canada"},
    },
    "confidence": 0.9,
    "rawText": "PASSPORT Jane Doe X1",
}


class FakeOCR:
    """OCR capability returning a canned payload or raising."""

    def __init__(self, payload: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None, gate=None):
        self.payload = payload if payload is not None else JANE_PAYLOAD
        self.error = error
        self.gate = gate
        self.calls = 0
        self.image_refs: List[str] = []

    async def perform_extraction(self, image_ref: str) -> Dict[str, Any]:
        self.calls += 1
        self.image_refs.append(image_ref)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.payload


class FakeStore:
    """Content store keeping uploads in memory."""

    def __init__(self, uri: str = "https://gateway.test/ipfs/bafymetadata", error: Optional[Exception] = None):
        self.uri = uri
        self.error = error
        self.uploads: List[Dict[str, Any]] = []

    def is_configured(self) -> bool:
        return True

    async def upload(self, data: bytes, filename: str, content_type: str = "application/octet-stream") -> str:
        if self.error is not None:
            raise self.error
        self.uploads.append({"data": data, "filename": filename, "content_type": content_type})
        return self.uri

    async def close(self):
        pass
