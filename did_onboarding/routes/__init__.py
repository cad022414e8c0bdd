"""
DID Onboarding API Routes Package
Provides session, identity, liveness and publish endpoints.
"""

from did_onboarding.routes import sessions, identity, liveness, publish

__all__ = ['sessions', 'identity', 'liveness', 'publish']
