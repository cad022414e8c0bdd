"""
DID Onboarding Verification Score
Maps the signals accumulated in an IdentityRecord to a 0-100 score.

Weights:
- document:     35 x extraction confidence
- completeness: 25 x share of identity fields present
- liveness:     40 once the selfie capture is verified

Document and completeness only count after an extraction has completed.
"""

from enum import Enum

from did_onboarding.models import IdentityRecord, IDENTITY_FIELDS


DOCUMENT_WEIGHT = 35.0
COMPLETENESS_WEIGHT = 25.0
LIVENESS_WEIGHT = 40.0

MIN_SCORE = 0
MAX_SCORE = 100


class VerificationTier(str, Enum):
    """Qualitative tier shown next to the score."""
    INITIAL = "Initial verification"
    BASIC = "Basic verification"
    ENHANCED = "Enhanced verification"
    ADVANCED = "Advanced verification"


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return low
    if value != value:  # NaN
        return low
    return max(low, min(high, value))


def data_completeness(record: IdentityRecord) -> float:
    """Fraction of identity fields holding a non-blank value."""
    present = 0
    for name in IDENTITY_FIELDS:
        value = getattr(record, name, None)
        if isinstance(value, str) and value.strip():
            present += 1
    return present / len(IDENTITY_FIELDS)


def verification_score(record: IdentityRecord) -> int:
    """
    Compute the verification score for a record.

    Pure and deterministic; missing signals contribute zero, so a fresh
    record scores 0 and a record with a confident extraction and a verified
    liveness capture scores 100.
    """
    total = 0.0

    if record.extracted_info:
        total += DOCUMENT_WEIGHT * _clamp(record.extraction_confidence)
        total += COMPLETENESS_WEIGHT * data_completeness(record)

    if record.liveness_verified:
        total += LIVENESS_WEIGHT

    return int(max(MIN_SCORE, min(MAX_SCORE, round(total))))


def verification_tier(score: int) -> VerificationTier:
    """Determine the display tier for a score."""
    if score < 25:
        return VerificationTier.INITIAL
    elif score < 50:
        return VerificationTier.BASIC
    elif score < 75:
        return VerificationTier.ENHANCED
    else:
        return VerificationTier.ADVANCED
