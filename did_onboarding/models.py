"""
DID Onboarding Data Model
Identity record accumulated over a verification session and the documents
exchanged with the extraction, capture and publication components.
"""

from dataclasses import dataclass, fields
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field


# Identity fields populated by the extraction step, in display order
IDENTITY_FIELDS = (
    "full_name",
    "document_number",
    "document_type",
    "date_of_birth",
    "gender",
    "issuing_country",
)


@dataclass(frozen=True)
class DemoIdentity:
    """Identity used in place of verified data when publishing in demo mode."""
    first_name: str
    last_name: str
    date_of_birth: str
    nationality: str
    document_type: str
    document_number: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class IdentityRecord:
    """
    Canonical identity data for one verification session.

    Owned by the StepWorkflowController; every change goes through its
    merge operation, which also recomputes ``verification_score``.
    """

    # ============ Wallet step ============
    wallet_address: Optional[str] = None

    # ============ Extraction step ============
    full_name: Optional[str] = None
    document_number: Optional[str] = None
    document_type: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    issuing_country: Optional[str] = None
    document_image_ref: Optional[str] = None
    extracted_info: bool = False
    extraction_confidence: float = 0.0
    raw_extraction_text: str = ""

    # ============ Liveness step ============
    liveness_image_ref: Optional[str] = None
    liveness_verified: bool = False
    liveness_timestamp: Optional[str] = None  # ISO-8601

    # ============ Publish step ============
    demo_data: Optional[DemoIdentity] = None
    verification_timestamp: Optional[str] = None  # ISO-8601
    metadata_uri: Optional[str] = None

    # ============ Derived ============
    verification_score: int = 0

    @classmethod
    def field_names(cls) -> set:
        return {f.name for f in fields(cls)}

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view of the record."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if self.demo_data is not None:
            data["demo_data"] = {
                f.name: getattr(self.demo_data, f.name) for f in fields(self.demo_data)
            }
        return data


@dataclass
class ExtractionResult:
    """Output of the extraction engine, merged into the record as a whole."""
    fields: Dict[str, Optional[str]]
    confidence: float
    raw_text: str
    fallback: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class DetectionSample:
    """A single face-presence observation; consumed immediately."""
    present: bool
    timestamp: float


class MetadataAttribute(BaseModel):
    """One trait of the published DID metadata."""
    trait_type: str = Field(..., min_length=1)
    value: str = Field(..., min_length=1)


class MetadataDocument(BaseModel):
    """
    Published DID metadata.

    Field names and attribute order are consumed by downstream indexers
    and must stay stable.
    """
    name: str = Field(..., min_length=1)
    description: str
    image: str = Field(..., min_length=1)
    attributes: List[MetadataAttribute] = Field(default_factory=list)

    def attribute(self, trait_type: str) -> Optional[str]:
        """Value of a trait, or None if the document does not carry it."""
        for attr in self.attributes:
            if attr.trait_type == trait_type:
                return attr.value
        return None
