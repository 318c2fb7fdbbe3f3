"""
docrel configuration — all environment variables in one place.

Read from environment at import time. Nothing here is required until a
component actually needs it (db.init_client checks MONGO_URI).
"""

from __future__ import annotations

import os


class Settings:
    """Settings from environment variables."""

    # MongoDB
    MONGO_URI: str = os.environ.get("MONGO_URI", "")
    MONGO_DB: str = os.environ.get("MONGO_DB", "docrel")

    # Async propagation
    PROPAGATION_WORKERS: int = int(os.environ.get("PROPAGATION_WORKERS", "4"))
    PROPAGATION_QUEUE_SIZE: int = int(os.environ.get("PROPAGATION_QUEUE_SIZE", "10000"))

    # Batch refresh
    REFRESH_BATCH_SIZE: int = int(os.environ.get("REFRESH_BATCH_SIZE", "100"))

    # Public ids: random bytes fed to secrets.token_urlsafe
    PUBLIC_ID_LENGTH: int = int(os.environ.get("PUBLIC_ID_LENGTH", "16"))

    # Application
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")


# Singleton instance
settings = Settings()
