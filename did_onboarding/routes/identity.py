"""
DID Onboarding Identity API
Wallet connection and ID document extraction steps.
"""

import base64
from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel

from did_onboarding.errors import PipelineError
from did_onboarding.routes.common import (
    SessionResponse,
    get_registry,
    get_session,
    read_and_validate_file,
    session_response,
    to_http_error,
    validate_image,
)
from did_onboarding.services.wallet import ProvidedWallet
from did_onboarding.session import SessionRegistry, VerificationSession
from did_onboarding.workflow import WorkflowStep, run_extraction_step, run_wallet_step


router = APIRouter()


class WalletRequest(BaseModel):
    """Account returned by the browser wallet."""
    address: str


@router.post("/sessions/{session_id}/wallet", response_model=SessionResponse)
async def connect_wallet(request: WalletRequest, session: VerificationSession = Depends(get_session)):
    try:
        await run_wallet_step(session.workflow, ProvidedWallet(request.address))
    except PipelineError as e:
        raise to_http_error(e)
    return session_response(session)


def to_data_uri(content: bytes, content_type: Optional[str]) -> str:
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{content_type or 'image/jpeg'};base64,{encoded}"


@router.post("/sessions/{session_id}/document", response_model=SessionResponse)
async def submit_document(
    id_doc: UploadFile = File(..., description="ID document image (JPEG/PNG, max 10MB)"),
    session: VerificationSession = Depends(get_session),
    registry: SessionRegistry = Depends(get_registry),
):
    """
    Upload the ID document and extract identity fields from it.

    The image is pinned to IPFS when Pinata is configured, otherwise it is
    kept inline as a data URI. A request that arrives while the first one
    is still extracting waits for that result instead. OCR failures do not fail the request: the
    fallback identity is stored and the error is returned as a warning.
    """
    validate_image(id_doc, "id_doc")
    content = await read_and_validate_file(id_doc)

    try:
        session.workflow.require_active(WorkflowStep.EXTRACTION)

        if session.workflow.record.extracted_info:
            return session_response(session)

        if session.workflow.in_flight(WorkflowStep.EXTRACTION) is not None:
            image_ref = None
        elif registry.store.is_configured():
            image_ref = await registry.store.upload(
                content, id_doc.filename or "id_document", id_doc.content_type
            )
        else:
            image_ref = to_data_uri(content, id_doc.content_type)

        await run_extraction_step(session.workflow, session.extraction, image_ref)
    except PipelineError as e:
        raise to_http_error(e)

    warnings = []
    if session.extraction.error:
        warnings.append(f"Failed to extract information from your ID: {session.extraction.error}")
    return session_response(session, warnings)


@router.get("/sessions/{session_id}/extraction")
async def get_extraction_status(session: VerificationSession = Depends(get_session)):
    """Current extraction phase and progress for the progress indicator."""
    return {
        "session_id": session.session_id,
        "extracted_info": session.workflow.record.extracted_info,
        **session.extraction.snapshot(),
    }
