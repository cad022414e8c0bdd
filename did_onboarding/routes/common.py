"""
Shared helpers for the DID Onboarding API routes.
"""

from typing import Dict, Any, Optional, List

from fastapi import Depends, HTTPException, UploadFile, status
from pydantic import BaseModel

from did_onboarding.config import config
from did_onboarding.errors import (
    PipelineError,
    DeviceAccessError,
    PublishError,
    ValidationError,
    WalletError,
)
from did_onboarding.session import SessionRegistry, VerificationSession, session_registry


# Allowed MIME types
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}

# HTTP status for each pipeline failure
ERROR_STATUS = {
    ValidationError: status.HTTP_409_CONFLICT,
    WalletError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    DeviceAccessError: status.HTTP_503_SERVICE_UNAVAILABLE,
    PublishError: status.HTTP_502_BAD_GATEWAY,
}


class SessionResponse(BaseModel):
    """Workflow state of a verification session."""
    session_id: str
    active_step: str
    completed: Dict[str, bool]
    can_advance: bool
    verification_score: int
    verification_tier: str
    record: Dict[str, Any]
    warnings: List[str] = []


def session_response(session: VerificationSession, warnings: Optional[List[str]] = None) -> SessionResponse:
    return SessionResponse(
        session_id=session.session_id,
        warnings=warnings or [],
        **session.workflow.snapshot(),
    )


def to_http_error(error: PipelineError) -> HTTPException:
    """Translate a pipeline failure into an HTTP error."""
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


def get_registry() -> SessionRegistry:
    return session_registry


def get_session(session_id: str, registry: SessionRegistry = Depends(get_registry)) -> VerificationSession:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session not found: {session_id}"
        )
    return session


def validate_image(file: UploadFile, field_name: str) -> None:
    """Validate file MIME type."""
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field_name} file type. Expected: {sorted(ALLOWED_IMAGE_TYPES)}, got: {file.content_type}"
        )


async def read_and_validate_file(file: UploadFile, max_size: int = config.MAX_FILE_SIZE) -> bytes:
    """Read file content and validate size."""
    content = await file.read()

    if len(content) > max_size:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File {file.filename} exceeds maximum size of {max_size // (1024*1024)}MB"
        )

    if len(content) == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File {file.filename} is empty"
        )

    return content
