"""
DID Onboarding Liveness API
Drives the face-detection auto-capture cycle.

With CAMERA_SOURCE=upload the browser streams preview frames to
``/liveness/frame``; with CAMERA_SOURCE=webcam the server reads a local camera.
"""

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from pydantic import BaseModel

from did_onboarding.errors import PipelineError
from did_onboarding.routes.common import (
    SessionResponse,
    get_session,
    read_and_validate_file,
    session_response,
    to_http_error,
    validate_image,
)
from did_onboarding.services.camera import PushedFrameSource, decode_image
from did_onboarding.session import VerificationSession


router = APIRouter()


class LivenessStartRequest(BaseModel):
    auto_capture: bool = True


def liveness_status(session: VerificationSession) -> dict:
    record = session.workflow.record
    capture = session.capture.snapshot() if session.capture is not None else {"state": "not_started"}
    return {
        "session_id": session.session_id,
        "running": session.liveness_task is not None and not session.liveness_task.done(),
        "liveness_verified": record.liveness_verified,
        "captured": record.liveness_image_ref is not None,
        "error": session.liveness_error,
        **capture,
    }


@router.post("/sessions/{session_id}/liveness/start")
async def start_liveness(
    request: LivenessStartRequest = LivenessStartRequest(),
    session: VerificationSession = Depends(get_session),
):
    """Open the camera and begin face detection."""
    try:
        await session.start_liveness(auto_capture=request.auto_capture)
    except PipelineError as e:
        raise to_http_error(e)
    return liveness_status(session)


@router.post("/sessions/{session_id}/liveness/frame")
async def push_frame(
    frame: UploadFile = File(..., description="Preview frame (JPEG/PNG)"),
    session: VerificationSession = Depends(get_session),
):
    """Hand the latest browser preview frame to the detector."""
    if not isinstance(session.frame_source, PushedFrameSource) or not session.frame_source.is_open:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No capture session is accepting frames"
        )

    validate_image(frame, "frame")
    image = decode_image(await read_and_validate_file(frame))
    if image is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not decode frame"
        )

    session.frame_source.push(image)
    return liveness_status(session)


@router.post("/sessions/{session_id}/liveness/capture")
async def capture_now(session: VerificationSession = Depends(get_session)):
    """Manual capture from the current frame."""
    if session.capture is None or session.capture.capture_now() is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Nothing to capture"
        )
    return liveness_status(session)


@router.get("/sessions/{session_id}/liveness")
async def get_liveness(session: VerificationSession = Depends(get_session)):
    return liveness_status(session)


@router.post("/sessions/{session_id}/liveness/cancel")
async def cancel_liveness(session: VerificationSession = Depends(get_session)):
    """Stop the capture cycle and release the camera."""
    await session.stop_liveness()
    return liveness_status(session)


@router.post("/sessions/{session_id}/liveness/retake", response_model=SessionResponse)
async def retake_liveness(session: VerificationSession = Depends(get_session)):
    """Discard the captured selfie so a new capture can start."""
    try:
        await session.retake_liveness()
    except PipelineError as e:
        raise to_http_error(e)
    return session_response(session)
