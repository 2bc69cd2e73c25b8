"""Feed document normalisation.

Parses RSS/Atom bytes with feedparser and maps them onto the canonical
``{feed, entries}`` structure. A document feedparser cannot recognise as a
feed raises PARSE_FAILED (502): it came from an upstream, not from the caller.
"""

from __future__ import annotations

import io
import re
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import feedparser
import structlog
from bs4 import BeautifulSoup

from feedgate.errors import ErrorCode, ProxyError
from feedgate.models.feeds import CanonicalFeed, FeedEntry, FeedInfo

log = structlog.get_logger()

_WHITESPACE_RE = re.compile(r"\s+")

# Date fields in priority order; feedparser exposes a *_parsed struct for each.
ENTRY_DATE_FIELDS = ("published", "updated", "created")
FEED_DATE_FIELDS = ("updated", "published")


def strip_markup(html: str | None) -> str:
    """Remove tags, collapse whitespace and trim."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for node in soup(["script", "style"]):
        node.decompose()
    return _WHITESPACE_RE.sub(" ", soup.get_text(" ")).strip()


def _format_iso(dt: datetime) -> str:
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_date_string(value: str) -> datetime | None:
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        dt = None
    if dt is None:
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def to_iso(value: Any) -> str | None:
    """Normalise a feedparser date value to an ISO 8601 UTC string, or None."""
    if value in (None, ""):
        return None
    if isinstance(value, time.struct_time):
        try:
            return _format_iso(datetime(*value[:6], tzinfo=UTC))
        except (ValueError, OverflowError):
            return None
    if isinstance(value, datetime):
        return _format_iso(value if value.tzinfo else value.replace(tzinfo=UTC))
    if isinstance(value, str):
        dt = _parse_date_string(value)
        return _format_iso(dt) if dt else None
    return None


def _first_date(source: Any, fields: tuple[str, ...]) -> str | None:
    for field in fields:
        # feedparser already parsed whatever it understood into *_parsed
        iso = to_iso(source.get(f"{field}_parsed")) or to_iso(source.get(field))
        if iso:
            return iso
    return None


def _content_values(entry: Any) -> tuple[str | None, str | None]:
    """Return ``(html_content, plain_content)`` from an entry's content list."""
    html_value: str | None = None
    plain_value: str | None = None
    for item in entry.get("content") or []:
        value = item.get("value")
        if not value:
            continue
        if "html" in (item.get("type") or ""):
            html_value = html_value or value
        else:
            plain_value = plain_value or value
    return html_value, plain_value


def _enclosures(entry: Any) -> list[dict[str, str | None]]:
    return [
        {
            "url": enclosure.get("href") or enclosure.get("url"),
            "type": enclosure.get("type"),
            "length": enclosure.get("length"),
        }
        for enclosure in entry.get("enclosures") or []
        if enclosure.get("href") or enclosure.get("url")
    ]


def normalize_entry(entry: Any) -> FeedEntry:
    html_content, plain_content = _content_values(entry)
    summary_source = entry.get("summary") or html_content or plain_content or ""
    return FeedEntry(
        guid=entry.get("id") or entry.get("link") or None,
        title=entry.get("title") or "",
        link=entry.get("link") or "",
        published_at=_first_date(entry, ENTRY_DATE_FIELDS),
        author=entry.get("author") or None,
        summary=strip_markup(summary_source),
        content=html_content or plain_content,
        enclosure=_enclosures(entry),
    )


def _self_link(feed: Any) -> str | None:
    for link in feed.get("links") or []:
        if link.get("rel") == "self" and link.get("href"):
            return link["href"]
    return None


def parse_feed(document: bytes, final_url: str = "") -> CanonicalFeed:
    """Parse a feed document into the canonical structure.

    ``final_url`` is used as the base for relative links and as the fallback
    ``feed_url`` when the document does not declare its own.
    """
    # A file-like object keeps feedparser from treating the bytes as a path or URL.
    parsed = feedparser.parse(
        io.BytesIO(document),
        response_headers={"content-location": final_url} if final_url else None,
        resolve_relative_uris=True,
        sanitize_html=True,
    )

    if not parsed.get("version") and not parsed.entries:
        reason = parsed.get("bozo_exception") or "Not a feed document"
        log.warning("feed_parse_failed", url=final_url, reason=str(reason))
        raise ProxyError(ErrorCode.PARSE_FAILED, f"RSS parse failed: {reason}")

    if parsed.bozo:
        log.info("feed_parse_warning", url=final_url, reason=str(parsed.get("bozo_exception")))

    feed = parsed.feed
    image = feed.get("image") or {}
    info = FeedInfo(
        id=feed.get("id") or None,
        title=feed.get("title") or "",
        site_url=feed.get("link") or "",
        feed_url=_self_link(feed) or final_url,
        description=feed.get("subtitle") or None,
        icon=image.get("href") or feed.get("logo") or None,
        favicon=feed.get("icon") or None,
        updated_at=_first_date(feed, FEED_DATE_FIELDS),
    )
    entries = [normalize_entry(entry) for entry in parsed.entries]
    log.debug("feed_parsed", url=final_url, version=parsed.get("version"), entries=len(entries))
    return CanonicalFeed(feed=info, entries=entries)
