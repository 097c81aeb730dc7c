"""Request payload models."""

from __future__ import annotations

from pydantic import BaseModel, Field


class CacheRequest(BaseModel):
    """Body of ``POST /``: warm the cache for ``url`` without returning its content."""

    url: str = Field(min_length=1)
    access_token: str
