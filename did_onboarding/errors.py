"""
DID Onboarding Errors
Failure taxonomy shared by the pipeline components and the HTTP driver.
"""


class PipelineError(Exception):
    """Base class for verification pipeline failures."""


class DeviceAccessError(PipelineError):
    """Capture device is unavailable or access was denied."""


class ExtractionError(PipelineError):
    """OCR capability failed; recovered with the fallback identity."""


class PublishError(PipelineError):
    """Content-addressed upload failed; blocks DID issuance until retried."""


class ValidationError(PipelineError):
    """IdentityRecord or step state violates the workflow contract."""


class WalletError(PipelineError):
    """Wallet did not supply a usable account address."""
