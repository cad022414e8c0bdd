"""
DID Onboarding IPFS Service
Content-addressed storage using Pinata for IPFS pinning.

Implements:
- File upload (document images, metadata.json) with pinning
- CID retrieval through the Pinata or public gateway
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Union

import httpx

from did_onboarding.config import config
from did_onboarding.errors import PublishError

logger = logging.getLogger(__name__)


@dataclass
class IPFSUploadResult:
    """Result of an IPFS upload operation."""
    cid: str
    size_bytes: int
    gateway_url: str
    sha256: str
    pin_status: str = "pinned"


def compute_sha256(data: Union[bytes, str]) -> str:
    """Compute SHA256 hash of data."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


class PinataStore:
    """
    IPFS storage using Pinata.

    Every failure raises PublishError: a missing CID blocks DID issuance,
    so callers must see it.
    """

    # Pinata API endpoints
    PINATA_PIN_FILE_URL = "https://api.pinata.cloud/pinning/pinFileToIPFS"

    # Public fallback gateway
    PUBLIC_GATEWAY_URL = "https://ipfs.io/ipfs"

    def __init__(
        self,
        pinata_api_key: str = None,
        pinata_secret_key: str = None,
        pinata_jwt: str = None,
        gateway_url: str = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize IPFS store with Pinata credentials.

        Args:
            pinata_api_key: Pinata API key
            pinata_secret_key: Pinata secret key
            pinata_jwt: Pinata JWT (alternative to API key pair)
            gateway_url: Gateway used to build returned URLs
            transport: Optional httpx transport (used by tests)
        """
        self.api_key = pinata_api_key or config.PINATA_API_KEY
        self.secret_key = pinata_secret_key or config.PINATA_SECRET_KEY
        self.jwt = pinata_jwt or config.PINATA_JWT
        self.gateway_url = (gateway_url or config.IPFS_GATEWAY).rstrip("/")

        self.client = httpx.AsyncClient(
            timeout=60.0,
            headers=self._build_headers(),
            transport=transport,
        )

    def _build_headers(self) -> Dict[str, str]:
        """Build authentication headers for Pinata API."""
        if self.jwt:
            return {"Authorization": f"Bearer {self.jwt}"}
        elif self.api_key and self.secret_key:
            return {
                "pinata_api_key": self.api_key,
                "pinata_secret_api_key": self.secret_key,
            }
        else:
            return {}

    def is_configured(self) -> bool:
        """Check if IPFS store is properly configured."""
        return bool(self.jwt or (self.api_key and self.secret_key))

    def get_gateway_url(self, cid: str, use_public: bool = False) -> str:
        if use_public:
            return f"{self.PUBLIC_GATEWAY_URL}/{cid}"
        return f"{self.gateway_url}/{cid}"

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error = response.json().get("error", response.text)
        except ValueError:
            return response.text
        if isinstance(error, dict):
            return error.get("details") or error.get("reason") or response.text
        return str(error)

    def _handle_response(self, response: httpx.Response, size_bytes: int, digest: str) -> IPFSUploadResult:
        if response.status_code != 200:
            raise PublishError(
                f"Pinata error ({response.status_code}): {self._error_message(response)}"
            )

        cid = response.json().get("IpfsHash", "")
        if not cid:
            raise PublishError("Pinata response did not include a CID")

        return IPFSUploadResult(
            cid=cid,
            size_bytes=size_bytes,
            gateway_url=self.get_gateway_url(cid),
            sha256=digest,
        )

    async def upload_file(
        self,
        data: bytes,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> IPFSUploadResult:
        """
        Upload raw bytes to IPFS as a named file.

        Raises:
            PublishError: if the store is not configured or the upload fails
        """
        if not self.is_configured():
            raise PublishError("IPFS service not configured")
        if not data:
            raise PublishError(f"Refusing to upload empty file {filename}")

        try:
            response = await self.client.post(
                self.PINATA_PIN_FILE_URL,
                files={"file": (filename, data, content_type)},
                data={
                    "pinataMetadata": json.dumps({"name": filename}),
                    "pinataOptions": json.dumps({"cidVersion": 1}),
                },
            )
        except httpx.HTTPError as e:
            raise PublishError(f"Upload failed: {e}") from e

        result = self._handle_response(response, len(data), compute_sha256(data))
        logger.info(f"Pinned {filename} ({result.size_bytes} bytes) as {result.cid}")
        return result

    async def upload(self, data: bytes, filename: str, content_type: str = "application/octet-stream") -> str:
        """Upload bytes and return their gateway URL."""
        result = await self.upload_file(data, filename, content_type)
        return result.gateway_url

    async def fetch_json(self, cid: str) -> Dict[str, Any]:
        """
        Fetch a JSON document from IPFS by CID.
        Tries the configured gateway first, then the public one.
        """
        if not cid:
            raise ValueError("CID is required")

        last_error = None
        for use_public in (False, True):
            url = self.get_gateway_url(cid, use_public=use_public)
            try:
                response = await self.client.get(url, headers={"Accept": "application/json"}, timeout=30.0)
            except httpx.HTTPError as e:
                last_error = str(e)
                continue
            if response.status_code == 200:
                return response.json()
            last_error = f"HTTP {response.status_code}"

        raise LookupError(f"Failed to fetch CID {cid}: {last_error}")

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
