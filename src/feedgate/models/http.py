from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CallerRecord(BaseModel):
    """Inbound record from the rendering surface (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TtsProxyRequest(CallerRecord):
    url: str = ""
    method: str = "GET"
    headers: dict[str, str] = {}
    body: str | None = None
    timeout_ms: int | None = Field(default=None, gt=0)
    max_bytes: int | None = None


class StructuredTtsRequest(CallerRecord):
    text: str = ""
    api_key: str = ""
    model: str = ""
    voice: str = ""
    api_base: str = ""


class ProxiedResponse(BaseModel):
    """Upstream response relayed back to the caller as raw bytes."""

    status: int
    headers: dict[str, str] = {}
    body: bytes = b""
    final_url: str | None = None
