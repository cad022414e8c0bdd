"""
DID Onboarding Extraction Engine
Reads identity fields from an ID document image.

Phases: PREPARING -> EXTRACTING -> PROCESSING -> COMPLETE

The OCR call is the only step that can fail; any failure is replaced by
the fallback identity so the workflow can always continue, and the error
is reported on the result for display.
"""

import asyncio
import base64
import json
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, Callable, Protocol, List

import cv2
import httpx
import numpy as np

from did_onboarding.config import config
from did_onboarding.errors import ExtractionError
from did_onboarding.models import ExtractionResult, IDENTITY_FIELDS

logger = logging.getLogger(__name__)


# Substituted when OCR fails; every identity field carries a placeholder
FALLBACK_IDENTITY: Dict[str, str] = {
    "full_name": "John Doe",
    "document_number": "AB123456789",
    "document_type": "National ID",
    "date_of_birth": "1990-01-01",
    "gender": "Male",
    "issuing_country": "United States",
}

DEMO_CONFIDENCE = 0.92

# Keys used by OCR back ends for each canonical field
FIELD_ALIASES: Dict[str, tuple] = {
    "full_name": ("full_name", "fullName", "name"),
    "document_number": ("document_number", "documentNumber", "idNumber", "id_number"),
    "document_type": ("document_type", "documentType"),
    "date_of_birth": ("date_of_birth", "dateOfBirth", "dob"),
    "gender": ("gender", "sex"),
    "issuing_country": ("issuing_country", "issuingCountry", "nationality", "country"),
}


class ExtractionPhase(str, Enum):
    PREPARING = "preparing"
    EXTRACTING = "extracting"
    PROCESSING = "processing"
    COMPLETE = "complete"


class OCRCapability(Protocol):
    """Information-extraction back end."""

    async def perform_extraction(self, image_ref: str) -> Dict[str, Any]:
        """Return ``{"fields": {...}, "confidence": float, "raw_text": str}``."""
        ...


# ============ Normalization ============

def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_fields(raw: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """
    Map back-end specific keys onto the canonical identity fields.

    Nested ``metadata`` blocks (``metadata.documentType``,
    ``metadata.issuingCountry``) are searched after the top level.
    """
    sources = [raw]
    if isinstance(raw.get("metadata"), dict):
        sources.append(raw["metadata"])

    normalized: Dict[str, Optional[str]] = {}
    for canonical, aliases in FIELD_ALIASES.items():
        value = None
        for source in sources:
            for alias in aliases:
                value = _clean(source.get(alias))
                if value:
                    break
            if value:
                break
        normalized[canonical] = value
    return normalized


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence > 1.0:
        # Some back ends report percentages
        confidence = confidence / 100.0
    return max(0.0, min(1.0, confidence))


def fallback_result(error: Optional[str] = None) -> ExtractionResult:
    """The deterministic record used when extraction fails."""
    return ExtractionResult(
        fields=dict(FALLBACK_IDENTITY),
        confidence=0.0,
        raw_text=json.dumps(FALLBACK_IDENTITY, indent=2),
        fallback=True,
        error=error,
    )


# ============ Image references ============

async def resolve_image_bytes(image_ref: str, client: Optional[httpx.AsyncClient] = None) -> bytes:
    """
    Load the bytes behind an image reference.

    Supports ``data:`` URIs, http(s) URLs (IPFS gateway links) and local paths.
    """
    if image_ref.startswith("data:"):
        try:
            _, payload = image_ref.split(",", 1)
            return base64.b64decode(payload)
        except ValueError as e:
            raise ExtractionError(f"Malformed data URI: {e}") from e

    if image_ref.startswith(("http://", "https://")):
        if client is not None:
            response = await client.get(image_ref)
        else:
            async with httpx.AsyncClient(timeout=30.0) as owned:
                response = await owned.get(image_ref)
        if response.status_code != 200:
            raise ExtractionError(f"Could not fetch document image: HTTP {response.status_code}")
        return response.content

    path = Path(image_ref)
    if not path.is_file():
        raise ExtractionError(f"Document image not found: {image_ref}")
    return path.read_bytes()


# ============ Text parsing ============

DOB_PATTERNS = [
    r"(\d{4}[-/\.]\d{2}[-/\.]\d{2})",    # YYYY-MM-DD
    r"(\d{2}[-/\.]\d{2}[-/\.]\d{4})",    # DD-MM-YYYY
]
DOCNUM_PATTERNS = [
    r"\b([A-Z]{1,2}\d{6,9})\b",
    r"\b(\d{8,10})\b",
]
DOCUMENT_TYPES = [
    (r"PASSPORT", "Passport"),
    (r"DRIVER'?S?\s+LICEN[CS]E", "Driver's License"),
    (r"RESIDENCE\s+PERMIT", "Residence Permit"),
    (r"(NATIONAL\s+ID|IDENTITY\s+CARD|ID\s+CARD)", "National ID"),
]


def _normalize_date(s: str) -> Optional[str]:
    s = s.strip()
    m = re.match(r"(\d{4})[-/\.](\d{2})[-/\.](\d{2})", s)
    if m:
        return f"{m.group(1)}-{m.group(2)}-{m.group(3)}"
    m = re.match(r"(\d{2})[-/\.](\d{2})[-/\.](\d{4})", s)
    if m:
        return f"{m.group(3)}-{m.group(2)}-{m.group(1)}"
    return None


def parse_identity_text(text: str) -> Dict[str, Optional[str]]:
    """Pull identity fields out of OCR text with simple patterns."""
    fields: Dict[str, Optional[str]] = {name: None for name in IDENTITY_FIELDS}

    name = re.search(r"\bName\s*[:\-]?\s*([A-Za-z][A-Za-z'\-]+(?:[ \t]+[A-Za-z][A-Za-z'\-]+){0,3})", text, re.IGNORECASE)
    if name:
        fields["full_name"] = name.group(1).title()
    else:
        # Fall back to the first run of uppercase words
        candidates = re.findall(r"\b([A-Z]{2,}(?:[ \t]+[A-Z]{2,}){1,3})\b", text)
        keywords = {"PASSPORT", "NATIONAL", "IDENTITY", "CARD", "REPUBLIC", "DRIVER", "LICENSE"}
        for candidate in candidates:
            if not keywords.intersection(candidate.split()):
                fields["full_name"] = candidate.title()
                break

    for pat in DOB_PATTERNS:
        m = re.search(pat, text)
        if m:
            fields["date_of_birth"] = _normalize_date(m.group(1))
            break

    for pat in DOCNUM_PATTERNS:
        m = re.search(pat, text)
        if m:
            fields["document_number"] = m.group(1)
            break

    sex = re.search(r"\b(Sex|Gender)\s*[:\-/]?\s*(M|F|MALE|FEMALE)\b", text, re.IGNORECASE)
    if sex:
        fields["gender"] = "Female" if sex.group(2).upper().startswith("F") else "Male"

    nat = re.search(r"\b(Nationality|Citizenship|Country)\s*[:\-]?\s*([A-Za-z]{3,}(?:[ \t]+[A-Za-z]{3,})?)", text, re.IGNORECASE)
    if nat:
        fields["issuing_country"] = nat.group(2).strip().title()

    upper = text.upper()
    for pattern, label in DOCUMENT_TYPES:
        if re.search(pattern, upper):
            fields["document_type"] = label
            break

    return fields


# ============ OCR back ends ============

class EasyOCRExtractor:
    """
    Document OCR using EasyOCR.
    The reader is created on first use (model download, GPU if available).
    """

    def __init__(self, languages: Optional[List[str]] = None, client: Optional[httpx.AsyncClient] = None):
        self.languages = languages or config.ocr_languages()
        self.client = client
        self.reader = None

    def _get_reader(self):
        """Lazy initialization of the EasyOCR reader."""
        if self.reader is None:
            import easyocr
            import torch

            self.reader = easyocr.Reader(self.languages, gpu=torch.cuda.is_available())
            logger.info(f"EasyOCR reader initialized (languages: {self.languages})")
        return self.reader

    def _read(self, image: np.ndarray) -> Dict[str, Any]:
        results = self._get_reader().readtext(image)
        lines = [result[1] for result in results]
        confidences = [float(result[2]) for result in results]
        raw_text = "\n".join(lines)
        return {
            "fields": parse_identity_text(raw_text),
            "confidence": sum(confidences) / len(confidences) if confidences else 0.0,
            "raw_text": raw_text,
        }

    async def perform_extraction(self, image_ref: str) -> Dict[str, Any]:
        image_bytes = await resolve_image_bytes(image_ref, self.client)
        image = cv2.imdecode(np.frombuffer(image_bytes, np.uint8), cv2.IMREAD_COLOR)
        if image is None:
            raise ExtractionError("Could not decode document image")
        return await asyncio.to_thread(self._read, image)


class DemoOCRExtractor:
    """Returns the sample identity after a simulated OCR delay."""

    def __init__(self, delay: float = 3.0):
        self.delay = delay

    async def perform_extraction(self, image_ref: str) -> Dict[str, Any]:
        await asyncio.sleep(self.delay)
        return {
            "fields": dict(FALLBACK_IDENTITY),
            "confidence": DEMO_CONFIDENCE,
            "raw_text": json.dumps(FALLBACK_IDENTITY, indent=2),
        }


def create_ocr_capability(backend: Optional[str] = None) -> OCRCapability:
    """Build the OCR back end named by OCR_BACKEND."""
    backend = (backend or config.OCR_BACKEND).lower()
    if backend == "demo":
        return DemoOCRExtractor()
    if backend == "easyocr":
        return EasyOCRExtractor()
    raise ValueError(f"Unknown OCR backend: {backend}")


# ============ Engine ============

class ExtractionEngine:
    """
    Runs one document extraction with phase and progress reporting.

    Progress climbs by 5 every ``progress_interval`` seconds up to 90 while
    the OCR call is in flight, then 95 while processing and 100 on completion.
    """

    def __init__(
        self,
        ocr: OCRCapability,
        prepare_delay: float = None,
        process_delay: float = None,
        progress_interval: float = None,
        on_phase: Optional[Callable[[ExtractionPhase, int], None]] = None,
    ):
        self.ocr = ocr
        self.prepare_delay = config.PREPARE_DELAY if prepare_delay is None else prepare_delay
        self.process_delay = config.PROCESS_DELAY if process_delay is None else process_delay
        self.progress_interval = config.PROGRESS_INTERVAL if progress_interval is None else progress_interval
        self.on_phase = on_phase

        self.phase = ExtractionPhase.PREPARING
        self.progress = 0
        self.error: Optional[str] = None

    def _set_phase(self, phase: ExtractionPhase, progress: int) -> None:
        self.phase = phase
        self.progress = progress
        if self.on_phase is not None:
            self.on_phase(phase, progress)

    async def _progress_loop(self) -> None:
        while self.progress < 90:
            await asyncio.sleep(self.progress_interval)
            self.progress = min(90, self.progress + 5)

    def _to_result(self, raw: Dict[str, Any]) -> ExtractionResult:
        if not isinstance(raw, dict):
            raise ExtractionError("OCR returned an unexpected payload")

        source = raw.get("fields", raw)
        if not isinstance(source, dict):
            raise ExtractionError("OCR returned an unexpected payload")

        fields = normalize_fields(source)
        if not any(fields.values()):
            raise ExtractionError("No identity fields found in document")

        confidence = raw.get("confidence", source.get("confidence", 0.0))
        raw_text = raw.get("raw_text") or raw.get("rawText") or ""
        return ExtractionResult(
            fields=fields,
            confidence=_clamp_confidence(confidence),
            raw_text=str(raw_text),
        )

    async def extract(self, image_ref: Optional[str]) -> ExtractionResult:
        """Extract identity fields; never raises for OCR failures."""
        self.error = None
        self._set_phase(ExtractionPhase.PREPARING, 0)
        await asyncio.sleep(self.prepare_delay)

        self._set_phase(ExtractionPhase.EXTRACTING, 0)
        ticker = asyncio.create_task(self._progress_loop(), name="extraction-progress")
        try:
            if not image_ref:
                raise ExtractionError("No image URL provided for extraction")
            raw = await self.ocr.perform_extraction(image_ref)
            result = self._to_result(raw)
        except Exception as e:
            logger.warning(f"[!] Extraction failed, using fallback identity: {e}")
            self.error = str(e) or "Failed to extract information from your ID"
            result = fallback_result(self.error)
        finally:
            ticker.cancel()
            await asyncio.gather(ticker, return_exceptions=True)

        self._set_phase(ExtractionPhase.PROCESSING, 95)
        await asyncio.sleep(self.process_delay)

        self._set_phase(ExtractionPhase.COMPLETE, 100)
        return result

    def snapshot(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "progress": self.progress,
            "error": self.error,
        }
