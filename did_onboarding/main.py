"""
DID Onboarding FastAPI Main Application
Entry point for the identity verification pipeline.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from did_onboarding import __version__
from did_onboarding.config import config
from did_onboarding.routes import sessions, identity, liveness, publish
from did_onboarding.session import session_registry

logging.basicConfig(
    level=config.API_LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not config.is_ipfs_configured():
        logger.warning("[!] Pinata credentials missing: document images stay inline and publishing will fail")
    yield
    # Release cameras and the IPFS client
    await session_registry.close_all()


# Initialize FastAPI app
app = FastAPI(
    title="DID Onboarding Verification Pipeline",
    description="Wallet connection, ID extraction, liveness capture and DID metadata publication",
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(sessions.router, prefix="/api", tags=["Sessions"])
app.include_router(identity.router, prefix="/api", tags=["Identity"])
app.include_router(liveness.router, prefix="/api", tags=["Liveness"])
app.include_router(publish.router, prefix="/api", tags=["Publish"])


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "DID Onboarding Verification Pipeline",
        "version": __version__,
        "ipfs_configured": config.is_ipfs_configured(),
        "ocr_backend": config.OCR_BACKEND,
        "camera_source": config.CAMERA_SOURCE,
    }


if __name__ == "__main__":
    uvicorn.run(
        "did_onboarding.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        log_level=config.API_LOG_LEVEL,
        reload=True
    )
