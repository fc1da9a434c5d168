from __future__ import annotations

from typing import Annotated, Optional

from pydantic import BaseModel, Field, StrictInt, StrictStr, field_validator

from app.domain.models import MAX_TTL_SECONDS

PositiveInt = Annotated[StrictInt, Field(ge=1)]
TtlSeconds = Annotated[StrictInt, Field(ge=1, le=MAX_TTL_SECONDS)]


class PasteCreateRequest(BaseModel):
    content: StrictStr = Field(..., description="Paste content (non-empty)")
    ttl_seconds: Optional[TtlSeconds] = Field(
        default=None,
        description="Optional time-to-live in seconds (1 to 100 years)",
    )
    max_views: Optional[PositiveInt] = Field(
        default=None,
        description="Optional maximum number of views (>= 1)",
    )

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must be a non-empty string")
        return value


class PasteCreateResponse(BaseModel):
    id: str
    url: str


class PasteFetchResponse(BaseModel):
    content: str
    remaining_views: Optional[int]
    expires_at: Optional[str] = Field(
        description="ISO-8601 UTC expiry instant, or null when the paste has no TTL",
    )


class HealthResponse(BaseModel):
    ok: bool = True
    error: Optional[str] = None
