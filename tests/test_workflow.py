"""
Unit Tests for the Step Workflow Controller and Step Runners

Usage:
    pytest tests/test_workflow.py -v
"""

import asyncio

import anyio
import pytest

from did_onboarding.errors import DeviceAccessError, PublishError, ValidationError, WalletError
from did_onboarding.models import DemoIdentity
from did_onboarding.services.capture import AutoCaptureController
from did_onboarding.services.extraction import ExtractionEngine, FALLBACK_IDENTITY
from did_onboarding.services.metadata import MetadataPublisher
from did_onboarding.services.wallet import ProvidedWallet, normalize_address
from did_onboarding.workflow import (
    StepWorkflowController,
    WorkflowStep,
    parse_step,
    run_extraction_step,
    run_liveness_step,
    run_publish_step,
    run_wallet_step,
)
from tests.helpers import (
    FakeFrameSource,
    FakeOCR,
    FakeStore,
    StubDetector,
    LIVENESS_IMAGE,
    SAMPLE_ADDRESS,
    SAMPLE_ADDRESS_CHECKSUM,
    make_frame,
    workflow_at,
)


def fast_engine(ocr) -> ExtractionEngine:
    return ExtractionEngine(ocr, prepare_delay=0, process_delay=0, progress_interval=0.001)


def fast_capture(present=True, source=None) -> AutoCaptureController:
    return AutoCaptureController(
        StubDetector(present),
        source or FakeFrameSource(frame=make_frame(0.5)),
        countdown_start=1,
        detection_interval=0.01,
        tick_interval=0.01,
    )


# ============================================================
# Record ownership and merge
# ============================================================

class TestMerge:

    def test_new_session_starts_at_wallet(self):
        workflow = StepWorkflowController()
        assert workflow.active_step is WorkflowStep.WALLET_CONNECT
        assert workflow.record.verification_score == 0
        assert not any(workflow.is_step_completed(step) for step in WorkflowStep)

    def test_merge_keeps_omitted_fields(self):
        workflow = StepWorkflowController()
        workflow.merge({"full_name": "Jane Doe", "document_number": "X1"})
        record = workflow.merge({"document_number": "X2"})
        assert record.full_name == "Jane Doe"
        assert record.document_number == "X2"

    def test_record_is_a_copy(self):
        workflow = StepWorkflowController()
        record = workflow.record
        record.full_name = "Mallory"
        assert workflow.record.full_name is None

    def test_score_is_recomputed(self):
        workflow = StepWorkflowController()
        before = workflow.record.verification_score
        record = workflow.merge({"extracted_info": True, "extraction_confidence": 0.9, "full_name": "Jane Doe"})
        assert record.verification_score > before

    def test_score_cannot_be_set(self):
        workflow = StepWorkflowController()
        with pytest.raises(ValidationError):
            workflow.merge({"verification_score": 100})

    def test_unknown_field_rejected(self):
        workflow = StepWorkflowController()
        with pytest.raises(ValidationError):
            workflow.merge({"favourite_colour": "blue"})

    def test_verified_without_image_rejected(self):
        workflow = StepWorkflowController()
        with pytest.raises(ValidationError):
            workflow.merge({"liveness_verified": True})
        assert workflow.record.liveness_verified is False

    def test_confidence_out_of_range_rejected(self):
        workflow = StepWorkflowController()
        with pytest.raises(ValidationError):
            workflow.merge({"extraction_confidence": 1.5})


# ============================================================
# Navigation
# ============================================================

class TestNavigation:

    def test_cannot_advance_incomplete_step(self):
        workflow = StepWorkflowController()
        assert workflow.can_advance() is False
        with pytest.raises(ValidationError):
            workflow.advance()

    def test_completion_requires_fields(self):
        workflow = StepWorkflowController()
        with pytest.raises(ValidationError):
            workflow.mark_step_completed(WorkflowStep.WALLET_CONNECT)
        assert workflow.is_step_completed(WorkflowStep.WALLET_CONNECT) is False

    def test_advance_after_completion(self):
        workflow = StepWorkflowController()
        workflow.merge({"wallet_address": SAMPLE_ADDRESS_CHECKSUM})
        workflow.mark_step_completed(WorkflowStep.WALLET_CONNECT)
        assert workflow.can_advance() is True
        assert workflow.advance() is WorkflowStep.EXTRACTION

    def test_cannot_advance_past_publish(self):
        workflow = workflow_at(WorkflowStep.PUBLISH)
        workflow.merge({"metadata_uri": "https://gateway.test/ipfs/bafymeta"})
        workflow.mark_step_completed(WorkflowStep.PUBLISH)
        assert workflow.can_advance() is False
        with pytest.raises(ValidationError):
            workflow.advance()

    def test_go_back_keeps_data(self):
        workflow = workflow_at(WorkflowStep.LIVENESS)
        assert workflow.go_back() is WorkflowStep.EXTRACTION
        assert workflow.record.full_name == "Jane Doe"
        assert workflow.is_step_completed(WorkflowStep.EXTRACTION)

    def test_go_back_invalidates_step_left(self):
        workflow = workflow_at(WorkflowStep.EXTRACTION)
        token = workflow.step_token(WorkflowStep.EXTRACTION)
        workflow.go_back()
        assert workflow.is_current(WorkflowStep.EXTRACTION, token) is False

    def test_go_back_stops_at_first_step(self):
        workflow = StepWorkflowController()
        assert workflow.go_back() is WorkflowStep.WALLET_CONNECT

    def test_snapshot(self):
        snapshot = workflow_at(WorkflowStep.LIVENESS).snapshot()
        assert snapshot["active_step"] == "liveness"
        assert snapshot["completed"]["extraction"] is True
        assert snapshot["completed"]["liveness"] is False
        assert snapshot["record"]["full_name"] == "Jane Doe"

    @pytest.mark.parametrize("value, step", [
        (WorkflowStep.PUBLISH, WorkflowStep.PUBLISH),
        (2, WorkflowStep.LIVENESS),
        ("wallet-connect", WorkflowStep.WALLET_CONNECT),
        ("EXTRACTION", WorkflowStep.EXTRACTION),
    ])
    def test_parse_step(self, value, step):
        assert parse_step(value) is step

    def test_parse_unknown_step(self):
        with pytest.raises(ValidationError):
            parse_step("selfie")


# ============================================================
# Re-entering steps
# ============================================================

class TestReenter:

    def test_retake_clears_only_liveness_fields(self):
        workflow = workflow_at(WorkflowStep.PUBLISH)
        before = workflow.record

        record = workflow.retake_liveness()

        assert record.liveness_image_ref is None
        assert record.liveness_verified is False
        assert record.liveness_timestamp is None
        assert record.full_name == before.full_name
        assert record.document_number == before.document_number
        assert record.extraction_confidence == before.extraction_confidence
        assert record.wallet_address == before.wallet_address
        assert workflow.active_step is WorkflowStep.LIVENESS
        assert workflow.is_step_completed(WorkflowStep.LIVENESS) is False
        assert workflow.is_step_completed(WorkflowStep.EXTRACTION) is True

    def test_retake_lowers_score(self):
        workflow = workflow_at(WorkflowStep.PUBLISH)
        before = workflow.record.verification_score
        assert workflow.retake_liveness().verification_score < before

    def test_reenter_extraction_keeps_other_steps(self):
        workflow = workflow_at(WorkflowStep.PUBLISH)
        record = workflow.reenter(WorkflowStep.EXTRACTION)
        assert record.extracted_info is False
        assert record.full_name is None
        assert record.wallet_address == SAMPLE_ADDRESS_CHECKSUM
        assert record.liveness_image_ref == LIVENESS_IMAGE

    def test_cannot_reenter_future_step(self):
        workflow = StepWorkflowController()
        with pytest.raises(ValidationError):
            workflow.reenter(WorkflowStep.LIVENESS)

    def test_reenter_invalidates_token(self):
        workflow = workflow_at(WorkflowStep.LIVENESS)
        token = workflow.step_token(WorkflowStep.LIVENESS)
        workflow.retake_liveness()
        assert workflow.is_current(WorkflowStep.LIVENESS, token) is False

    def test_reenter_invalidates_later_steps(self):
        workflow = workflow_at(WorkflowStep.LIVENESS)
        token = workflow.step_token(WorkflowStep.LIVENESS)
        workflow.reenter(WorkflowStep.EXTRACTION)
        assert workflow.is_current(WorkflowStep.LIVENESS, token) is False

    def test_close_invalidates_everything(self):
        workflow = StepWorkflowController()
        token = workflow.step_token(WorkflowStep.WALLET_CONNECT)
        workflow.close()
        assert workflow.is_current(WorkflowStep.WALLET_CONNECT, token) is False
        with pytest.raises(ValidationError):
            workflow.require_active(WorkflowStep.WALLET_CONNECT)


# ============================================================
# Wallet step
# ============================================================

@pytest.mark.anyio
class TestWalletStep:

    async def test_connect(self):
        workflow = StepWorkflowController()
        record = await run_wallet_step(workflow, ProvidedWallet(SAMPLE_ADDRESS))
        assert record.wallet_address == SAMPLE_ADDRESS_CHECKSUM
        assert workflow.is_step_completed(WorkflowStep.WALLET_CONNECT)

    async def test_invalid_address(self):
        workflow = StepWorkflowController()
        with pytest.raises(WalletError):
            await run_wallet_step(workflow, ProvidedWallet("0x1234"))
        assert workflow.record.wallet_address is None
        assert workflow.is_step_completed(WorkflowStep.WALLET_CONNECT) is False

    async def test_wrong_step(self):
        workflow = workflow_at(WorkflowStep.EXTRACTION)
        with pytest.raises(ValidationError):
            await run_wallet_step(workflow, ProvidedWallet(SAMPLE_ADDRESS))


class TestNormalizeAddress:

    def test_checksummed(self):
        assert normalize_address(f"  {SAMPLE_ADDRESS}  ") == SAMPLE_ADDRESS_CHECKSUM

    @pytest.mark.parametrize("address", [None, "", "   ", "not-an-address", "0xZZ"])
    def test_rejected(self, address):
        with pytest.raises(WalletError):
            normalize_address(address)


# ============================================================
# Extraction step
# ============================================================

@pytest.mark.anyio
class TestExtractionStep:

    async def test_extraction_fills_record(self):
        workflow = workflow_at(WorkflowStep.EXTRACTION)

        record = await run_extraction_step(workflow, fast_engine(FakeOCR()), "https://gateway.test/ipfs/bafydoc")

        assert record.extracted_info is True
        assert record.full_name == "Jane Doe"
        assert record.issuing_country == "Canada"
        assert record.document_image_ref == "https://gateway.test/ipfs/bafydoc"
        assert record.extraction_confidence == pytest.approx(0.9)
        assert workflow.is_step_completed(WorkflowStep.EXTRACTION)

    async def test_extraction_is_idempotent(self):
        workflow = workflow_at(WorkflowStep.EXTRACTION)
        ocr = FakeOCR()
        engine = fast_engine(ocr)

        first = await run_extraction_step(workflow, engine, "https://gateway.test/ipfs/bafydoc")
        second = await run_extraction_step(workflow, engine, "https://gateway.test/ipfs/other")

        assert ocr.calls == 1
        assert second == first

    async def test_failure_still_completes_with_fallback(self):
        workflow = workflow_at(WorkflowStep.EXTRACTION)
        engine = fast_engine(FakeOCR(error=RuntimeError("OCR service unavailable")))

        record = await run_extraction_step(workflow, engine, "https://gateway.test/ipfs/bafydoc")

        assert record.extracted_info is True
        assert record.full_name == FALLBACK_IDENTITY["full_name"]
        assert record.extraction_confidence == 0.0
        assert workflow.is_step_completed(WorkflowStep.EXTRACTION)
        assert engine.error == "OCR service unavailable"

    async def test_result_after_close_is_discarded(self):
        workflow = workflow_at(WorkflowStep.EXTRACTION)
        gate = asyncio.Event()
        ocr = FakeOCR(gate=gate)

        task = asyncio.create_task(run_extraction_step(workflow, fast_engine(ocr), "https://gateway.test/ipfs/bafydoc"))
        while ocr.calls == 0:
            await asyncio.sleep(0.001)
        workflow.close()
        gate.set()

        with anyio.fail_after(2):
            record = await task
        assert record.extracted_info is False
        assert record.full_name is None


    async def test_concurrent_runs_share_one_extraction(self):
        workflow = workflow_at(WorkflowStep.EXTRACTION)
        gate = asyncio.Event()
        ocr = FakeOCR(gate=gate)
        engine = fast_engine(ocr)

        first = asyncio.create_task(run_extraction_step(workflow, engine, "https://gateway.test/ipfs/bafydoc"))
        second = asyncio.create_task(run_extraction_step(workflow, engine, "https://gateway.test/ipfs/other"))
        while ocr.calls == 0:
            await asyncio.sleep(0.001)
        await asyncio.sleep(0.01)
        gate.set()

        with anyio.fail_after(2):
            records = await asyncio.gather(first, second)
        assert ocr.calls == 1
        assert records[0] == records[1]
        assert records[0].extracted_info is True
        assert records[0].document_image_ref == "https://gateway.test/ipfs/bafydoc"

    async def test_going_back_discards_running_extraction(self):
        workflow = workflow_at(WorkflowStep.EXTRACTION)
        gate = asyncio.Event()
        ocr = FakeOCR(gate=gate)

        task = asyncio.create_task(run_extraction_step(workflow, fast_engine(ocr), "https://gateway.test/ipfs/bafydoc"))
        while ocr.calls == 0:
            await asyncio.sleep(0.001)
        assert workflow.go_back() is WorkflowStep.WALLET_CONNECT
        gate.set()

        with anyio.fail_after(2):
            record = await task
        assert record.extracted_info is False
        assert record.full_name is None
        assert workflow.is_step_completed(WorkflowStep.EXTRACTION) is False

        workflow.advance()
        fresh = FakeOCR()
        record = await run_extraction_step(workflow, fast_engine(fresh), "https://gateway.test/ipfs/bafydoc")
        assert fresh.calls == 1
        assert record.extracted_info is True


# ============================================================
# Liveness step
# ============================================================

@pytest.mark.anyio
class TestLivenessStep:

    async def test_capture_and_verify(self):
        workflow = workflow_at(WorkflowStep.LIVENESS)
        source = FakeFrameSource(frame=make_frame(0.5))

        with anyio.fail_after(2):
            record = await run_liveness_step(workflow, fast_capture(source=source), verify_delay=0)

        assert record.liveness_image_ref.startswith("data:image/png;base64,")
        assert record.liveness_verified is True
        assert record.liveness_timestamp is not None
        assert workflow.is_step_completed(WorkflowStep.LIVENESS)
        assert source.releases == 1

    async def test_device_denied_leaves_record(self):
        workflow = workflow_at(WorkflowStep.LIVENESS)
        before = workflow.record

        with pytest.raises(DeviceAccessError):
            await run_liveness_step(workflow, fast_capture(source=FakeFrameSource(fail_open=True)))

        assert workflow.record == before

    async def test_cancel_leaves_record(self):
        workflow = workflow_at(WorkflowStep.LIVENESS)
        source = FakeFrameSource(frame=make_frame(0.0))
        controller = fast_capture(present=False, source=source)

        task = asyncio.create_task(run_liveness_step(workflow, controller, verify_delay=0))
        await asyncio.sleep(0.03)
        controller.cancel()

        with anyio.fail_after(2):
            record = await task
        assert record.liveness_image_ref is None
        assert record.liveness_verified is False
        assert source.releases == 1

    async def test_existing_capture_requires_retake(self):
        workflow = workflow_at(WorkflowStep.LIVENESS)
        workflow.merge({"liveness_image_ref": LIVENESS_IMAGE})
        with pytest.raises(ValidationError):
            await run_liveness_step(workflow, fast_capture())

    async def test_retake_during_verification_discards_result(self):
        workflow = workflow_at(WorkflowStep.LIVENESS)

        task = asyncio.create_task(run_liveness_step(workflow, fast_capture(), verify_delay=0.2))
        while not workflow.record.liveness_image_ref:
            await asyncio.sleep(0.005)
        workflow.retake_liveness()

        with anyio.fail_after(2):
            record = await task
        assert record.liveness_image_ref is None
        assert record.liveness_verified is False


    async def test_reentering_earlier_step_discards_capture(self):
        workflow = workflow_at(WorkflowStep.LIVENESS)
        source = FakeFrameSource(frame=make_frame(0.5))

        task = asyncio.create_task(run_liveness_step(workflow, fast_capture(source=source), verify_delay=0))
        await asyncio.sleep(0)
        workflow.reenter(WorkflowStep.EXTRACTION)

        with anyio.fail_after(2):
            record = await task
        assert record.liveness_image_ref is None
        assert record.liveness_verified is False
        assert workflow.is_step_completed(WorkflowStep.LIVENESS) is False
        assert workflow.active_step is WorkflowStep.EXTRACTION
        assert source.releases == 1


# ============================================================
# Publish step
# ============================================================

@pytest.mark.anyio
class TestPublishStep:

    async def test_publish(self):
        workflow = workflow_at(WorkflowStep.PUBLISH)
        store = FakeStore(uri="https://gateway.test/ipfs/bafymeta")

        outcome = await run_publish_step(workflow, MetadataPublisher(store))

        assert outcome.uri == "https://gateway.test/ipfs/bafymeta"
        assert outcome.document.attribute("document_number") == "X1"
        record = workflow.record
        assert record.metadata_uri == outcome.uri
        assert record.verification_timestamp == outcome.document.attribute("verification_timestamp")
        assert workflow.is_step_completed(WorkflowStep.PUBLISH)

    async def test_publish_failure_propagates(self):
        workflow = workflow_at(WorkflowStep.PUBLISH)
        store = FakeStore(error=PublishError("Pinata error (500): internal"))

        with pytest.raises(PublishError):
            await run_publish_step(workflow, MetadataPublisher(store))

        assert workflow.record.metadata_uri is None
        assert workflow.is_step_completed(WorkflowStep.PUBLISH) is False

    async def test_retry_after_failure(self):
        workflow = workflow_at(WorkflowStep.PUBLISH)
        store = FakeStore(error=PublishError("timeout"))
        publisher = MetadataPublisher(store)

        with pytest.raises(PublishError):
            await run_publish_step(workflow, publisher)
        store.error = None
        outcome = await run_publish_step(workflow, publisher)

        assert workflow.record.metadata_uri == outcome.uri

    async def test_demo_publish(self):
        workflow = workflow_at(WorkflowStep.PUBLISH)
        demo = DemoIdentity("Ada", "Lovelace", "1815-12-10", "United Kingdom", "Passport", "D123")

        outcome = await run_publish_step(workflow, MetadataPublisher(FakeStore()), demo_mode=True, demo_data=demo)

        assert outcome.document.name == "Ada Lovelace"
        assert outcome.document.attribute("verification_type") == "Demo Mode"
        assert workflow.record.demo_data == demo
