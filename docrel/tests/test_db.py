"""
Client Lifecycle Tests

Covers:
  - get_database before init_client raises
  - init_client requires MONGO_URI
  - close_client is safe without a client
"""

import pytest

from docrel import db
from docrel.config import settings


class TestClientLifecycle:
    def test_get_database_before_init(self, monkeypatch):
        monkeypatch.setattr(db, "client", None)
        with pytest.raises(RuntimeError, match="not initialized"):
            db.get_database()

    @pytest.mark.asyncio
    async def test_init_requires_uri(self, monkeypatch):
        monkeypatch.setattr(settings, "MONGO_URI", "")
        with pytest.raises(RuntimeError, match="MONGO_URI"):
            await db.init_client()

    @pytest.mark.asyncio
    async def test_close_without_client(self, monkeypatch):
        monkeypatch.setattr(db, "client", None)
        await db.close_client()
        assert db.client is None
