"""Data models for the daily news ingestion job."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

RUN_STATUS_SUCCESS = "success"
RUN_STATUS_ERROR = "error"


@dataclass
class Source:
    """A configured RSS/Atom feed endpoint."""

    key: str
    name: str
    url: str  # feed URL
    source_url: str  # site shown next to the news
    enabled: bool = True
    created_at: datetime | None = None


@dataclass
class FeedItem:
    """Represents a single RSS/Atom feed item."""

    title: str
    link: str
    description: str
    published: datetime | None
    source_name: str = ""
    source_url: str = ""


@dataclass
class CourseCatalogEntry:
    """An affiliate course the matcher may recommend."""

    id: str
    title: str
    affiliate_url: str
    description: str | None = None


@dataclass
class MatchedCourse:
    """A course linked to a news item with its relevance score."""

    course_id: str
    title: str
    affiliate_url: str
    score: float


@dataclass
class NewsRecord:
    """A persisted daily news entry."""

    id: str
    title: str
    original_url: str
    source_url: str
    description: str
    ai_summary: str | None
    related_courses: list[MatchedCourse]
    published_at: datetime | None
    display_date: date
    created_at: datetime | None = None


@dataclass
class RunLog:
    """Outcome of one pipeline run."""

    job_name: str
    status: str
    message: str
    processed_count: int
    duration_ms: int
    executed_at: datetime
    error_detail: str | None = None


@dataclass
class RunResult:
    """Value returned by the orchestrator to its caller."""

    status: str
    message: str
    records: list[NewsRecord] = field(default_factory=list)
    existing_count: int = 0
    duration_ms: int = 0
    error: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def processed_count(self) -> int:
        return len(self.records)
