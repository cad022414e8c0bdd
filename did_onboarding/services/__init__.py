"""
DID Onboarding Services Package
Provides capture, extraction, scoring, metadata, IPFS and wallet services.
"""

from did_onboarding.services.capture import AutoCaptureController, CaptureState
from did_onboarding.services.detection import CaptureDetector, SkinToneDetector, NativeFaceDetector
from did_onboarding.services.extraction import ExtractionEngine, ExtractionPhase, create_ocr_capability
from did_onboarding.services.ipfs import PinataStore, IPFSUploadResult
from did_onboarding.services.metadata import assemble_metadata, MetadataPublisher
from did_onboarding.services.scoring import verification_score, verification_tier, VerificationTier
from did_onboarding.services.wallet import ProvidedWallet, normalize_address

__all__ = [
    'AutoCaptureController',
    'CaptureState',
    'CaptureDetector',
    'SkinToneDetector',
    'NativeFaceDetector',
    'ExtractionEngine',
    'ExtractionPhase',
    'create_ocr_capability',
    'PinataStore',
    'IPFSUploadResult',
    'assemble_metadata',
    'MetadataPublisher',
    'verification_score',
    'verification_tier',
    'VerificationTier',
    'ProvidedWallet',
    'normalize_address',
]
