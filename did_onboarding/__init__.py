"""
DID Onboarding Verification Pipeline

Guides a user from wallet connection to a published DID metadata document:
- OCR extraction of identity fields from an ID document
- Liveness check with face-presence detection and timed auto-capture
- Verification score derived from the accumulated identity record
- Metadata publication to IPFS (Pinata)

Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "DID Onboarding Team"
