"""
DID Onboarding Session API
Creates sessions and moves them through the workflow steps.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from did_onboarding.errors import ValidationError
from did_onboarding.routes.common import (
    SessionResponse,
    get_registry,
    get_session,
    session_response,
    to_http_error,
)
from did_onboarding.services.scoring import verification_tier
from did_onboarding.session import SessionRegistry, VerificationSession


router = APIRouter()


@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(registry: SessionRegistry = Depends(get_registry)):
    """Start a new verification session at the wallet-connect step."""
    await registry.expire_idle()
    return session_response(registry.create())


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session_state(session: VerificationSession = Depends(get_session)):
    return session_response(session)


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Tear down a session, releasing its camera and discarding in-flight results."""
    if not await registry.remove(session_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session not found: {session_id}"
        )
    return {"success": True, "session_id": session_id}


@router.post("/sessions/{session_id}/advance", response_model=SessionResponse)
async def advance_step(session: VerificationSession = Depends(get_session)):
    """Move to the next step once the active one is completed."""
    try:
        session.workflow.advance()
    except ValidationError as e:
        raise to_http_error(e)
    return session_response(session)


@router.post("/sessions/{session_id}/back", response_model=SessionResponse)
async def previous_step(session: VerificationSession = Depends(get_session)):
    await session.go_back()
    return session_response(session)


@router.post("/sessions/{session_id}/steps/{step}/reenter", response_model=SessionResponse)
async def reenter_step(step: str, session: VerificationSession = Depends(get_session)):
    """Redo a step, clearing only the data it produced."""
    try:
        await session.reenter(step)
    except ValidationError as e:
        raise to_http_error(e)
    return session_response(session)


@router.get("/sessions/{session_id}/score")
async def get_score(session: VerificationSession = Depends(get_session)):
    score = session.workflow.record.verification_score
    return {
        "session_id": session.session_id,
        "verification_score": score,
        "verification_tier": verification_tier(score).value,
    }
