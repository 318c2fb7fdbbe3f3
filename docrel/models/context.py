"""Request-scoped context threaded through every facade call."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class OrmContext(BaseModel):
    """
    Who is asking, and inside which session.

    `session` is an opaque driver session handle (a PyMongo
    AsyncClientSession for MongoStore). When set, every store call made on the
    caller's behalf carries it.
    """

    model_config = {"arbitrary_types_allowed": True}

    request_id: str = Field(default_factory=lambda: uuid4().hex)
    user: Any = None
    tenant_id: str | None = None
    session: Any = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    extra: dict[str, Any] = Field(default_factory=dict)

    def with_session(self, session: Any) -> OrmContext:
        return self.model_copy(update={"session": session})
