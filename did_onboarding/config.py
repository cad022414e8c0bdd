"""
DID Onboarding Configuration Module
Loads environment variables and provides configuration settings for the
verification pipeline, the IPFS publisher and the HTTP driver.
"""

import os
from dataclasses import dataclass
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class Config:
    """Application configuration settings."""

    # ============ API Settings ============
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))
    API_LOG_LEVEL: str = os.getenv("API_LOG_LEVEL", "info")

    # ============ IPFS (Pinata) ============
    PINATA_API_KEY: str = os.getenv("PINATA_API_KEY", "")
    PINATA_SECRET_KEY: str = os.getenv("PINATA_SECRET_KEY", "")
    PINATA_JWT: str = os.getenv("PINATA_JWT", "")  # Alternative to API key pair

    # IPFS Gateway
    IPFS_GATEWAY: str = os.getenv("IPFS_GATEWAY", "https://gateway.pinata.cloud/ipfs")

    # Shown when neither a selfie nor a document image is available
    PLACEHOLDER_IMAGE_URL: str = os.getenv(
        "PLACEHOLDER_IMAGE_URL",
        "https://green-manual-tapir-637.mypinata.cloud/ipfs/"
        "bafybeiamhz7xwe7kjvurvtc7d4t3pscyttowfqkkcjrdfsulcn56bdrgke/image.png",
    )

    # ============ OCR ============
    # "easyocr" runs the local reader, "demo" returns the sample identity
    OCR_BACKEND: str = os.getenv("OCR_BACKEND", "easyocr")
    OCR_LANGUAGES: str = os.getenv("OCR_LANGUAGES", "en")

    # ============ Pipeline Timing (seconds) ============
    DETECTION_INTERVAL: float = float(os.getenv("DETECTION_INTERVAL", "0.5"))
    COUNTDOWN_START: int = int(os.getenv("COUNTDOWN_START", "1"))
    COUNTDOWN_TICK: float = float(os.getenv("COUNTDOWN_TICK", "1.0"))
    PREPARE_DELAY: float = float(os.getenv("PREPARE_DELAY", "1.5"))
    PROCESS_DELAY: float = float(os.getenv("PROCESS_DELAY", "2.0"))
    PROGRESS_INTERVAL: float = float(os.getenv("PROGRESS_INTERVAL", "0.3"))
    LIVENESS_VERIFY_DELAY: float = float(os.getenv("LIVENESS_VERIFY_DELAY", "2.0"))

    # ============ Liveness ============
    SKIN_RATIO_THRESHOLD: float = float(os.getenv("SKIN_RATIO_THRESHOLD", "0.15"))
    # "upload" takes frames pushed by the browser, "webcam" opens a local device
    CAMERA_SOURCE: str = os.getenv("CAMERA_SOURCE", "upload")
    CAMERA_DEVICE_ID: int = int(os.getenv("CAMERA_DEVICE_ID", "0"))

    # ============ Sessions ============
    # Sessions untouched for this long are closed and dropped
    SESSION_IDLE_TIMEOUT: float = float(os.getenv("SESSION_IDLE_TIMEOUT", "1800"))

    # ============ File Upload Settings ============
    MAX_FILE_SIZE: int = 10 * 1024 * 1024  # 10MB

    def is_ipfs_configured(self) -> bool:
        """Check if IPFS is properly configured."""
        return bool(
            self.PINATA_JWT or
            (self.PINATA_API_KEY and self.PINATA_SECRET_KEY)
        )

    def ocr_languages(self) -> list:
        """Languages handed to the OCR reader."""
        return [lang.strip() for lang in self.OCR_LANGUAGES.split(",") if lang.strip()]


# Global config instance
config = Config()
