"""
DID Onboarding Metadata Service
Builds the DID metadata document from an identity record and publishes it
to IPFS.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from did_onboarding.config import config
from did_onboarding.errors import PublishError
from did_onboarding.models import IdentityRecord, MetadataDocument, MetadataAttribute

logger = logging.getLogger(__name__)


UNKNOWN = "Unknown"
NOT_APPLICABLE = "N/A"
NOT_SPECIFIED = "Not Specified"
NOT_AVAILABLE = "Not Available"

METADATA_FILENAME = "metadata.json"


class ContentStore(Protocol):
    """Content-addressed upload capability."""

    async def upload(self, data: bytes, filename: str, content_type: str = ...) -> str:
        ...


def _or(value: Optional[str], placeholder: str) -> str:
    if value is None:
        return placeholder
    text = str(value).strip()
    return text or placeholder


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def assemble_metadata(
    record: IdentityRecord,
    demo_mode: bool = False,
    now: Optional[str] = None,
    placeholder_image: Optional[str] = None,
) -> MetadataDocument:
    """
    Generate the metadata document for a DID.

    Args:
        record: Identity record accumulated by the workflow
        demo_mode: Use the record's demo identity instead of verified data
        now: Timestamp used when the record has no verification timestamp
        placeholder_image: Image used when no capture is available

    Returns:
        MetadataDocument with every attribute value non-empty
    """
    demo = record.demo_data if demo_mode else None

    if demo_mode:
        name = _or(demo.full_name if demo else None, "Unknown User")
        document_number = _or(demo.document_number if demo else None, NOT_APPLICABLE)
        document_type = _or(demo.document_type if demo else None, UNKNOWN)
        date_of_birth = _or(demo.date_of_birth if demo else None, NOT_APPLICABLE)
        nationality = _or(demo.nationality if demo else None, UNKNOWN)
        gender = NOT_SPECIFIED
    else:
        name = _or(record.full_name, "Unknown User")
        document_number = _or(record.document_number, NOT_APPLICABLE)
        document_type = _or(record.document_type, UNKNOWN)
        date_of_birth = _or(record.date_of_birth, NOT_APPLICABLE)
        nationality = _or(record.issuing_country, UNKNOWN)
        gender = _or(record.gender, NOT_SPECIFIED)

    # Prefer the selfie over the document image for the DID profile
    image = _or(
        record.liveness_image_ref or record.document_image_ref,
        placeholder_image or config.PLACEHOLDER_IMAGE_URL,
    )

    liveness_verified = bool(record.liveness_verified or record.liveness_image_ref)

    attributes = [
        ("document_type", document_type),
        ("document_number", document_number),
        ("full_name", name),
        ("date_of_birth", date_of_birth),
        ("gender", gender),
        ("nationality", nationality),
        ("verification_score", str(record.verification_score or 0)),
        ("verification_timestamp", _or(record.verification_timestamp, now or utc_now_iso())),
        ("verification_type", "Demo Mode" if demo_mode else "Full Verification"),
        ("liveness_verified", "Yes" if liveness_verified else "No"),
        ("document_image_url", _or(record.document_image_ref, NOT_AVAILABLE)),
        ("liveness_image_url", _or(record.liveness_image_ref, NOT_AVAILABLE)),
    ]

    return MetadataDocument(
        name=name,
        description=f"Name: {name}, ID # {document_number}, DOB: {date_of_birth}, Gender: {gender}",
        image=image,
        attributes=[MetadataAttribute(trait_type=t, value=v) for t, v in attributes],
    )


def serialize_metadata(document: MetadataDocument) -> bytes:
    """Canonical JSON bytes of a metadata document."""
    return json.dumps(document.model_dump(), ensure_ascii=False).encode("utf-8")


class MetadataPublisher:
    """Publishes assembled metadata documents to content-addressed storage."""

    def __init__(self, store: ContentStore):
        self.store = store

    async def publish(self, document: MetadataDocument) -> str:
        """
        Upload a metadata document.

        Returns:
            URL of the pinned metadata.json

        Raises:
            PublishError: if serialization or the upload fails
        """
        try:
            payload = serialize_metadata(MetadataDocument.model_validate(document.model_dump()))
        except (TypeError, ValueError) as e:
            raise PublishError(f"Metadata document is not serializable: {e}") from e

        try:
            uri = await self.store.upload(payload, METADATA_FILENAME, "application/json")
        except PublishError:
            raise
        except Exception as e:
            raise PublishError(f"Error uploading metadata to IPFS: {e}") from e

        if not uri:
            raise PublishError("Failed to upload metadata to IPFS")

        logger.info(f"DID metadata uploaded to IPFS: {uri}")
        return uri
