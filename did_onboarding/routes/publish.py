"""
DID Onboarding Publish API
Assembles the DID metadata and pins it to IPFS.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from did_onboarding.errors import PipelineError
from did_onboarding.models import DemoIdentity, MetadataDocument
from did_onboarding.routes.common import get_registry, get_session, to_http_error
from did_onboarding.session import SessionRegistry, VerificationSession
from did_onboarding.workflow import run_publish_step

logger = logging.getLogger(__name__)

router = APIRouter()


class DemoDataModel(BaseModel):
    first_name: str
    last_name: str
    date_of_birth: str
    nationality: str
    document_type: str
    document_number: str


class PublishRequest(BaseModel):
    demo_mode: bool = False
    demo_data: Optional[DemoDataModel] = None


class PublishResponse(BaseModel):
    """Publication result."""
    success: bool
    session_id: str
    metadata_uri: str
    verification_score: int
    metadata: MetadataDocument


@router.post("/sessions/{session_id}/publish", response_model=PublishResponse)
async def publish_metadata(
    request: PublishRequest = PublishRequest(),
    session: VerificationSession = Depends(get_session),
    registry: SessionRegistry = Depends(get_registry),
):
    """
    Publish the DID metadata document.

    Upload failures are returned as 502 and leave the step incomplete so the
    client can retry.
    """
    demo_data = DemoIdentity(**request.demo_data.model_dump()) if request.demo_data else None

    try:
        outcome = await run_publish_step(
            session.workflow,
            registry.publisher,
            demo_mode=request.demo_mode,
            demo_data=demo_data,
        )
    except PipelineError as e:
        logger.error(f"Publishing metadata failed for {session.session_id}: {e}")
        raise to_http_error(e)

    return PublishResponse(
        success=True,
        session_id=session.session_id,
        metadata_uri=outcome.uri,
        verification_score=session.workflow.record.verification_score,
        metadata=outcome.document,
    )
