"""Feed fetching and parsing for the daily news ingestion job."""

import re
from datetime import UTC, datetime
from urllib.parse import urlparse

import feedparser
import requests
from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from .errors import FetchError, MalformedFeedError
from .logging_config import create_execution_logger
from .models import FeedItem, Source

FORMAT_ATOM = "atom"
FORMAT_RSS = "rss"

REQUEST_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; DevInterview/1.0)",
    "Accept": "application/atom+xml, application/rss+xml, application/xml, text/xml",
}

_ATOM_ROOT = re.compile(r"<feed[\s>]")
_ATOM_ENTRY = re.compile(r"<entry[\s>]")
_ATOM_CONTAINER = re.compile(r"<feed[^>]*>.*</feed>", re.DOTALL)
_RSS_CONTAINER = re.compile(r"<channel[^>]*>.*?</channel>", re.DOTALL)
_CDATA = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)


def detect_feed_format(raw_text: str) -> str:
    """Sniff whether a payload is Atom or RSS2.

    Raises:
        MalformedFeedError: If neither a feed nor a channel container is present
    """
    if _ATOM_ROOT.search(raw_text) and _ATOM_ENTRY.search(raw_text):
        if not _ATOM_CONTAINER.search(raw_text):
            raise MalformedFeedError("Invalid Atom: no feed found")
        return FORMAT_ATOM

    if _RSS_CONTAINER.search(raw_text):
        return FORMAT_RSS

    raise MalformedFeedError("Invalid RSS: no channel found")


def decode_text(text: str | None) -> str:
    """Reduce feed markup to plain text.

    Strips CDATA wrappers, decodes HTML entities, drops tags and collapses
    whitespace.
    """
    if not text:
        return ""

    text = _CDATA.sub(r"\1", text)

    if "<" in text or "&" in text:
        soup = BeautifulSoup(text, "html.parser")
        for script in soup(["script", "style"]):
            script.decompose()
        text = soup.get_text(separator=" ")

    return " ".join(text.split())


def parse_published(value: str | None) -> datetime | None:
    """Parse an RSS/Atom timestamp, returning None when it is unusable."""
    if not value:
        return None
    try:
        published = date_parser.parse(value)
    except (ValueError, TypeError, OverflowError):
        return None
    if published.tzinfo is None:
        published = published.replace(tzinfo=UTC)
    return published


class FeedProcessor:
    """Downloads feeds and turns them into FeedItems."""

    def __init__(self, timeout: int = 30, execution_id: str | None = None):
        """Initialize FeedProcessor with configuration.

        Args:
            timeout: HTTP request timeout in seconds
            execution_id: Execution ID for logging context
        """
        self.timeout = timeout
        self.logger = create_execution_logger("feed_processor", execution_id)
        self.session = requests.Session()
        self.session.headers.update(REQUEST_HEADERS)

        self.logger.info("FeedProcessor initialized", timeout=timeout)

    def fetch(self, source: Source) -> str:
        """Download the raw feed text of a source.

        Raises:
            FetchError: If the URL is not HTTPS, the request fails or the
                response status is not successful
        """
        parsed_url = urlparse(source.url)
        if parsed_url.scheme != "https":
            raise FetchError(f"Feed URL must use HTTPS protocol: {source.url}")

        try:
            self.logger.info("Downloading feed content", source_name=source.name, feed_url=source.url)
            response = self.session.get(source.url, timeout=self.timeout, allow_redirects=True)
            response.raise_for_status()
        except requests.RequestException as e:
            self.logger.error(
                f"Failed to download feed {source.url}: {e}",
                source_name=source.name,
                feed_url=source.url,
                error=str(e),
            )
            raise FetchError(f"RSS fetch failed for {source.name}: {e}") from e

        self.logger.info(
            "Feed downloaded successfully",
            source_name=source.name,
            status_code=response.status_code,
            content_length=len(response.content),
        )
        return response.text

    def parse(self, raw_text: str, source: Source) -> list[FeedItem]:
        """Parse a feed payload into items.

        Entries that cannot be normalized are skipped.

        Raises:
            MalformedFeedError: If the outer feed/channel container is absent
        """
        feed_format = detect_feed_format(raw_text)

        # The text is already decoded, so pin the charset over any XML declaration
        feed = feedparser.parse(
            raw_text.encode("utf-8"),
            response_headers={"content-type": "application/xml; charset=utf-8"},
        )

        if feed.bozo and hasattr(feed, "bozo_exception"):
            self.logger.warning(
                f"Feed parsing warning for {source.name}: {feed.bozo_exception}",
                source_name=source.name,
                bozo_exception=str(feed.bozo_exception),
            )

        items = []
        for entry in feed.entries:
            try:
                item = self.normalize_entry(entry, feed_format, source)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                self.logger.warning(
                    f"Failed to normalize entry from {source.name}: {e}",
                    source_name=source.name,
                    error=str(e),
                )
                continue

            if not item.link:
                self.logger.warning(
                    "Skipping entry without link",
                    source_name=source.name,
                    item_title=item.title,
                )
                continue
            items.append(item)

        self.logger.info(
            "Successfully parsed feed",
            source_name=source.name,
            feed_format=feed_format,
            items_count=len(items),
            total_entries=len(feed.entries),
        )
        return items

    def normalize_entry(self, entry: dict, feed_format: str, source: Source) -> FeedItem:
        """Normalize a feedparser entry into a FeedItem."""
        title = decode_text(entry.get("title", ""))
        link = (entry.get("link") or "").strip()

        body = ""
        if feed_format == FORMAT_ATOM and entry.get("content"):
            body = entry["content"][0].get("value", "")
        if not body:
            body = entry.get("summary") or entry.get("description") or ""

        published = parse_published(entry.get("published") or entry.get("updated"))

        return FeedItem(
            title=title,
            link=link,
            description=decode_text(body),
            published=published,
            source_name=source.name,
            source_url=source.source_url,
        )
