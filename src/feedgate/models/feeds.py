from __future__ import annotations

from pydantic import BaseModel


class FeedInfo(BaseModel):
    id: str | None = None
    title: str = ""
    site_url: str = ""
    feed_url: str = ""
    description: str | None = None
    icon: str | None = None
    favicon: str | None = None
    updated_at: str | None = None  # ISO 8601, UTC


class FeedEntry(BaseModel):
    guid: str | None = None
    title: str = ""
    link: str = ""
    published_at: str | None = None  # ISO 8601, UTC
    author: str | None = None
    summary: str = ""  # Plain text, markup stripped
    content: str | None = None  # Raw HTML as published
    enclosure: list[dict[str, str | None]] = []


class CanonicalFeed(BaseModel):
    """Parsed feed document in the shape the reader surface consumes."""

    feed: FeedInfo
    entries: list[FeedEntry] = []


class FeedFetchResult(BaseModel):
    status: int
    etag: str | None = None
    last_modified: str | None = None
    final_url: str | None = None
    json_feed: CanonicalFeed | None = None  # Set when parsing was requested
    document: str | None = None  # Raw document when parsing was not requested


class HtmlFetchResult(BaseModel):
    status: int
    final_url: str
    content_type: str
    html: str
