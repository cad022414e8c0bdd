"""
DID Onboarding Step Workflow
Sequences wallet-connect -> extraction -> liveness -> publish and owns the
session's IdentityRecord.

The controller is the only writer of the record: step runners hand their
results to ``merge`` and then mark their step completed. Re-entering a step
clears the fields that step owns and invalidates any result still in
flight for it.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Optional, Dict, Any, Mapping

from did_onboarding.config import config
from did_onboarding.errors import ValidationError
from did_onboarding.models import IdentityRecord, IDENTITY_FIELDS, DemoIdentity, MetadataDocument
from did_onboarding.services.capture import AutoCaptureController
from did_onboarding.services.extraction import ExtractionEngine
from did_onboarding.services.metadata import MetadataPublisher, assemble_metadata, utc_now_iso
from did_onboarding.services.scoring import verification_score, verification_tier
from did_onboarding.services.wallet import WalletProvider

logger = logging.getLogger(__name__)


class WorkflowStep(IntEnum):
    WALLET_CONNECT = 0
    EXTRACTION = 1
    LIVENESS = 2
    PUBLISH = 3

    @property
    def slug(self) -> str:
        return self.name.lower().replace("_", "-")


# Fields each step is allowed to clear when it is re-entered
STEP_FIELDS: Dict[WorkflowStep, tuple] = {
    WorkflowStep.WALLET_CONNECT: ("wallet_address",),
    WorkflowStep.EXTRACTION: IDENTITY_FIELDS + (
        "document_image_ref",
        "extracted_info",
        "extraction_confidence",
        "raw_extraction_text",
    ),
    WorkflowStep.LIVENESS: ("liveness_image_ref", "liveness_verified", "liveness_timestamp"),
    WorkflowStep.PUBLISH: ("demo_data", "verification_timestamp", "metadata_uri"),
}

# Fields that must be set before a step can be marked completed
REQUIRED_FIELDS: Dict[WorkflowStep, tuple] = {
    WorkflowStep.WALLET_CONNECT: ("wallet_address",),
    WorkflowStep.EXTRACTION: ("extracted_info",),
    WorkflowStep.LIVENESS: ("liveness_image_ref", "liveness_verified"),
    WorkflowStep.PUBLISH: ("metadata_uri",),
}

_DEFAULTS = IdentityRecord()


def parse_step(value: Any) -> WorkflowStep:
    """Resolve a step from its enum, index, name or slug."""
    if isinstance(value, WorkflowStep):
        return value
    if isinstance(value, int):
        return WorkflowStep(value)
    key = str(value).strip().upper().replace("-", "_")
    try:
        return WorkflowStep[key]
    except KeyError:
        raise ValidationError(f"Unknown workflow step: {value}")


class StepWorkflowController:
    """State machine over the verification steps for one session."""

    def __init__(self, record: Optional[IdentityRecord] = None):
        record = replace(record) if record is not None else IdentityRecord()
        self._check_invariants(record)
        record.verification_score = verification_score(record)
        self._record = record

        self.active_step = WorkflowStep.WALLET_CONNECT
        self._completed: Dict[WorkflowStep, bool] = {step: False for step in WorkflowStep}
        self._epochs: Dict[WorkflowStep, int] = {step: 0 for step in WorkflowStep}
        self._inflight: Dict[WorkflowStep, tuple] = {}
        self.closed = False

    # ============ Record ============

    @property
    def record(self) -> IdentityRecord:
        """Copy of the current record."""
        return replace(self._record)

    @staticmethod
    def _check_invariants(record: IdentityRecord) -> None:
        if record.liveness_verified and not record.liveness_image_ref:
            raise ValidationError("liveness_verified requires a captured liveness image")
        if not 0.0 <= float(record.extraction_confidence) <= 1.0:
            raise ValidationError("extraction_confidence must be within [0, 1]")
        if record.demo_data is not None and not isinstance(record.demo_data, DemoIdentity):
            raise ValidationError("demo_data must be a DemoIdentity")

    def merge(self, update: Mapping[str, Any]) -> IdentityRecord:
        """
        Shallow-merge an update into the record.

        Provided fields overwrite, omitted fields keep their value. The
        verification score is recomputed and cannot be set directly.

        Raises:
            ValidationError: unknown fields, a score override, or a
                resulting record that breaks an invariant
        """
        update = dict(update)
        if "verification_score" in update:
            raise ValidationError("verification_score is derived and cannot be set")

        unknown = set(update) - IdentityRecord.field_names()
        if unknown:
            raise ValidationError(f"Unknown identity fields: {sorted(unknown)}")

        candidate = replace(self._record, **update)
        self._check_invariants(candidate)
        candidate.verification_score = verification_score(candidate)
        self._record = candidate
        return self.record

    # ============ Completion gates ============

    def is_step_completed(self, step: WorkflowStep) -> bool:
        return self._completed[parse_step(step)]

    def mark_step_completed(self, step: WorkflowStep, completed: bool = True) -> None:
        """
        Set a step's completion flag.

        Raises:
            ValidationError: if completing a step whose required fields are absent
        """
        step = parse_step(step)
        if completed:
            missing = [name for name in REQUIRED_FIELDS[step] if not getattr(self._record, name)]
            if missing:
                raise ValidationError(f"Cannot complete {step.slug}: missing {missing}")
        self._completed[step] = completed

    def require_active(self, step: WorkflowStep) -> None:
        if self.closed:
            raise ValidationError("Verification session is closed")
        if self.active_step is not step:
            raise ValidationError(
                f"{step.slug} is not the active step (active: {self.active_step.slug})"
            )

    # ============ Navigation ============

    def can_advance(self) -> bool:
        return (
            self._completed[self.active_step]
            and self.active_step is not WorkflowStep.PUBLISH
        )

    def advance(self) -> WorkflowStep:
        """Move to the next step; the active step must be completed."""
        if not self._completed[self.active_step]:
            raise ValidationError(f"Step {self.active_step.slug} is not completed")
        if self.active_step is WorkflowStep.PUBLISH:
            raise ValidationError("Already at the final step")
        self.active_step = WorkflowStep(self.active_step + 1)
        return self.active_step

    def go_back(self) -> WorkflowStep:
        """
        Return to the previous step without clearing anything. Results still
        in flight for the step being left are dropped.
        """
        if self.active_step is not WorkflowStep.WALLET_CONNECT:
            self._epochs[self.active_step] += 1
            self.active_step = WorkflowStep(self.active_step - 1)
        return self.active_step

    def reenter(self, step: WorkflowStep) -> IdentityRecord:
        """
        Redo a step: reset its completion flag, clear only the fields it
        owns, make it active and invalidate in-flight results for it and
        for every later step being left.
        """
        step = parse_step(step)
        if step > self.active_step:
            raise ValidationError(f"Cannot re-enter {step.slug} before reaching it")

        for left in range(step, self.active_step + 1):
            self._epochs[WorkflowStep(left)] += 1
        self._completed[step] = False
        self.active_step = step
        cleared = {name: getattr(_DEFAULTS, name) for name in STEP_FIELDS[step]}
        logger.info(f"Re-entering step {step.slug}")
        return self.merge(cleared)

    def retake_liveness(self) -> IdentityRecord:
        return self.reenter(WorkflowStep.LIVENESS)

    # ============ Stale results ============

    def step_token(self, step: WorkflowStep) -> int:
        return self._epochs[parse_step(step)]

    def is_current(self, step: WorkflowStep, token: int) -> bool:
        return not self.closed and self._epochs[step] == token

    def track(self, step: WorkflowStep, task: asyncio.Task) -> None:
        """Remember the task computing the current epoch's result for a step."""
        self._inflight[step] = (self._epochs[step], task)

    def in_flight(self, step: WorkflowStep) -> Optional[asyncio.Task]:
        entry = self._inflight.get(step)
        if entry is None:
            return None
        token, task = entry
        if task.done() or not self.is_current(step, token):
            return None
        return task

    def close(self) -> None:
        """Teardown: results still in flight are ignored from now on."""
        self.closed = True
        for step in WorkflowStep:
            self._epochs[step] += 1

    def snapshot(self) -> Dict[str, Any]:
        score = self._record.verification_score
        return {
            "active_step": self.active_step.slug,
            "completed": {step.slug: done for step, done in self._completed.items()},
            "can_advance": self.can_advance(),
            "verification_score": score,
            "verification_tier": verification_tier(score).value,
            "record": self._record.to_dict(),
        }


# ============ Step runners ============

async def run_wallet_step(workflow: StepWorkflowController, wallet: WalletProvider) -> IdentityRecord:
    """Connect the wallet and store its address."""
    workflow.require_active(WorkflowStep.WALLET_CONNECT)
    token = workflow.step_token(WorkflowStep.WALLET_CONNECT)

    address = await wallet.request_accounts()
    if not workflow.is_current(WorkflowStep.WALLET_CONNECT, token):
        return workflow.record

    workflow.merge({"wallet_address": address})
    workflow.mark_step_completed(WorkflowStep.WALLET_CONNECT)
    logger.info(f"Wallet connected: {address}")
    return workflow.record


async def run_extraction_step(
    workflow: StepWorkflowController,
    engine: ExtractionEngine,
    image_ref: Optional[str] = None,
) -> IdentityRecord:
    """
    Extract identity fields from the document image.

    Runs at most once per session: a record that already holds a completed
    extraction is returned unchanged without calling OCR, and a caller that
    arrives while OCR is running waits for that same run.
    """
    workflow.require_active(WorkflowStep.EXTRACTION)
    if workflow.record.extracted_info:
        return workflow.record

    pending = workflow.in_flight(WorkflowStep.EXTRACTION)
    if pending is not None:
        logger.info("Extraction already running, waiting for its result")
        return await asyncio.shield(pending)

    task = asyncio.create_task(_extract_document(workflow, engine, image_ref))
    workflow.track(WorkflowStep.EXTRACTION, task)
    return await asyncio.shield(task)


async def _extract_document(
    workflow: StepWorkflowController,
    engine: ExtractionEngine,
    image_ref: Optional[str],
) -> IdentityRecord:
    record = workflow.record
    if image_ref and image_ref != record.document_image_ref:
        workflow.merge({"document_image_ref": image_ref})
    image_ref = image_ref or record.document_image_ref

    token = workflow.step_token(WorkflowStep.EXTRACTION)
    result = await engine.extract(image_ref)
    if not workflow.is_current(WorkflowStep.EXTRACTION, token):
        logger.info("Discarding extraction result for a superseded step")
        return workflow.record

    update: Dict[str, Any] = dict(result.fields)
    update.update(
        extracted_info=True,
        extraction_confidence=result.confidence,
        raw_extraction_text=result.raw_text,
    )
    workflow.merge(update)
    workflow.mark_step_completed(WorkflowStep.EXTRACTION)

    if result.error:
        logger.warning(f"[!] Extraction completed with fallback data: {result.error}")
    return workflow.record


async def run_liveness_step(
    workflow: StepWorkflowController,
    controller: AutoCaptureController,
    verify_delay: float = None,
) -> IdentityRecord:
    """
    Run one capture cycle and verify it.

    A cancelled cycle leaves the record untouched. Device errors propagate
    before anything is stored.
    """
    workflow.require_active(WorkflowStep.LIVENESS)
    if workflow.record.liveness_image_ref:
        raise ValidationError("A liveness image is already captured; retake to capture again")

    verify_delay = config.LIVENESS_VERIFY_DELAY if verify_delay is None else verify_delay
    token = workflow.step_token(WorkflowStep.LIVENESS)

    if not controller.started:
        await controller.start()
    try:
        image_ref = await controller.wait_for_capture()
    finally:
        await controller.close()

    if image_ref is None or not workflow.is_current(WorkflowStep.LIVENESS, token):
        return workflow.record

    workflow.merge({"liveness_image_ref": image_ref})

    # Simulated verification of the captured frame
    await asyncio.sleep(verify_delay)
    if not workflow.is_current(WorkflowStep.LIVENESS, token):
        return workflow.record

    workflow.merge({"liveness_verified": True, "liveness_timestamp": utc_now_iso()})
    workflow.mark_step_completed(WorkflowStep.LIVENESS)
    logger.info("Liveness verified")
    return workflow.record


@dataclass
class PublishOutcome:
    uri: str
    document: MetadataDocument


async def run_publish_step(
    workflow: StepWorkflowController,
    publisher: MetadataPublisher,
    demo_mode: bool = False,
    demo_data: Optional[DemoIdentity] = None,
) -> PublishOutcome:
    """
    Assemble and publish the DID metadata.

    Raises:
        PublishError: if the upload fails; the step stays incomplete
    """
    workflow.require_active(WorkflowStep.PUBLISH)
    if demo_data is not None:
        workflow.merge({"demo_data": demo_data})

    record = workflow.record
    timestamp = record.verification_timestamp or utc_now_iso()
    document = assemble_metadata(record, demo_mode=demo_mode, now=timestamp)

    token = workflow.step_token(WorkflowStep.PUBLISH)
    uri = await publisher.publish(document)
    if not workflow.is_current(WorkflowStep.PUBLISH, token):
        return PublishOutcome(uri=uri, document=document)

    workflow.merge({"metadata_uri": uri, "verification_timestamp": timestamp})
    workflow.mark_step_completed(WorkflowStep.PUBLISH)
    return PublishOutcome(uri=uri, document=document)
