"""
FastAPI service entrypoint.

Responsibilities:
- Create FastAPI app
- Register ingress routes (storage notifications, signed media, Twilio status callbacks)
- Act as a lightweight ingress layer

IMPORTANT:
- This service does NOT transcode or reconcile.
- Transcoding runs in the transcode worker; delivery runs in the reconciliation scheduler.
"""

from __future__ import annotations

from fastapi import FastAPI

from src.voicenotes.api.media import router as media_router
from src.voicenotes.api.storage_webhook import router as storage_router
from src.voicenotes.api.twilio_status import router as twilio_status_router
from src.voicenotes.config.settings import settings
from src.voicenotes.logging.logger import setup_logger

logger = setup_logger(__name__)


def create_app() -> FastAPI:
    """
    FastAPI application factory.
    """
    app = FastAPI(title="Voice Note Pipeline Ingress")

    app.include_router(storage_router)
    app.include_router(media_router)
    app.include_router(twilio_status_router)

    if settings.conversation_store == "memory":
        logger.warning(
            "CONVERSATION_STORE=memory | status callbacks only see messages written by this process; "
            "use CONVERSATION_STORE=redis alongside the worker and scheduler"
        )

    logger.info("FastAPI ingress service initialized | env=%s", settings.app_env)

    return app


# ASGI entrypoint (required by uvicorn)
app = create_app()
