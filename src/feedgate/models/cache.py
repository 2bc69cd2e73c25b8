from __future__ import annotations

from pydantic import BaseModel


class CachedImage(BaseModel):
    """Fetched (and possibly transcoded) image bytes held in memory."""

    body: bytes
    content_type: str
    final_url: str  # Post-redirect URL the bytes came from
    expires_at: float  # Clock reading after which the entry is treated as absent
