"""Firestore async client factory."""

from typing import Optional

import structlog
from google.cloud.firestore_v1.async_client import AsyncClient

from libs.common.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

_client: Optional[AsyncClient] = None


def get_firestore_async_client(settings: Optional[Settings] = None) -> AsyncClient:
    """
    Returns a shared asynchronous Firestore client.

    Credentials come from the environment (GOOGLE_APPLICATION_CREDENTIALS or
    the emulator via FIRESTORE_EMULATOR_HOST).
    """
    global _client

    if _client is None:
        settings = settings or get_settings()
        _client = AsyncClient(project=settings.firestore_project, database=settings.firestore_database)
        logger.info(
            "Firestore client initialized",
            project=settings.firestore_project,
            database=settings.firestore_database,
        )
    return _client
