"""Configuration management for the daily news ingestion job."""

import json
import os
from dataclasses import dataclass
from pathlib import Path

from .models import Source

DEFAULT_SOURCES = [
    Source(
        key="GEEK_NEWS",
        name="GeekNews",
        url="https://news.hada.io/rss/news",
        source_url="https://news.hada.io",
    ),
    Source(
        key="HACKER_NEWS",
        name="Hacker News",
        url="https://news.ycombinator.com/rss",
        source_url="https://news.ycombinator.com",
    ),
]


@dataclass
class BedrockConfig:
    """Configuration for Amazon Bedrock."""

    model_id: str = "amazon.nova-micro-v1:0"
    region: str = "us-east-1"
    max_tokens: int = 1000
    temperature: float = 0.3


@dataclass
class TableConfig:
    """DynamoDB table names."""

    sources: str = "daily-news-sources"
    news: str = "daily-news-records"
    courses: str = "daily-news-courses"
    run_logs: str = "daily-news-run-logs"
    locks: str = "daily-news-locks"


@dataclass
class PipelineConfig:
    """Tunables of a single ingestion run."""

    job_name: str = "daily-news"
    timezone_offset_hours: int = 9
    freshness_window_hours: int = 24
    max_items_per_source: int = 10
    max_matched_courses: int = 2
    match_score_threshold: float = 0.5
    request_timeout: int = 30
    lock_ttl_seconds: int = 900


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer: {raw!r}")


class Config:
    """Main configuration manager."""

    # Optional seed list overriding DEFAULT_SOURCES
    SOURCES_FILE = "sources.json"

    def __init__(self):
        """Initialize configuration from environment variables."""
        self.aws_region = os.getenv(
            "CURRENT_AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")
        )
        self.bedrock_model_id = os.getenv("BEDROCK_MODEL_ID", "amazon.nova-micro-v1:0")
        self.access_secret_name = os.getenv("ACCESS_SECRET_NAME", "daily-news-access")
        self.sources_table = os.getenv("SOURCES_TABLE", "daily-news-sources")
        self.news_table = os.getenv("NEWS_TABLE", "daily-news-records")
        self.courses_table = os.getenv("COURSES_TABLE", "daily-news-courses")
        self.run_logs_table = os.getenv("RUN_LOGS_TABLE", "daily-news-run-logs")
        self.locks_table = os.getenv("LOCKS_TABLE", "daily-news-locks")
        self.timezone_offset_hours = _int_env("DISPLAY_TZ_OFFSET_HOURS", 9)
        self.freshness_window_hours = _int_env("FRESHNESS_WINDOW_HOURS", 24)
        self.max_items_per_source = _int_env("MAX_ITEMS_PER_SOURCE", 10)

    def get_default_sources(self) -> list[Source]:
        """Get the sources seeded into an empty registry.

        Reads sources.json from the current directory or the Lambda root when
        present, otherwise returns the built-in defaults.
        """
        sources_file = Path(self.SOURCES_FILE)
        if not sources_file.exists():
            sources_file = Path("/var/task") / self.SOURCES_FILE

        if not sources_file.exists():
            return list(DEFAULT_SOURCES)

        try:
            with open(sources_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in sources file: {e}")

        sources = []
        for entry in data.get("sources", []):
            try:
                sources.append(
                    Source(
                        key=entry["key"],
                        name=entry["name"],
                        url=entry["url"],
                        source_url=entry["sourceUrl"],
                        enabled=entry.get("enabled", True),
                    )
                )
            except KeyError as e:
                raise ValueError(f"Source entry missing field {e}: {entry}")

        if not sources:
            raise ValueError("No sources defined in sources file")

        return sources

    def get_bedrock_config(self) -> BedrockConfig:
        """Get Bedrock configuration."""
        return BedrockConfig(model_id=self.bedrock_model_id, region=self.aws_region)

    def get_table_config(self) -> TableConfig:
        """Get DynamoDB table names."""
        return TableConfig(
            sources=self.sources_table,
            news=self.news_table,
            courses=self.courses_table,
            run_logs=self.run_logs_table,
            locks=self.locks_table,
        )

    def get_pipeline_config(self) -> PipelineConfig:
        """Get pipeline tunables."""
        return PipelineConfig(
            timezone_offset_hours=self.timezone_offset_hours,
            freshness_window_hours=self.freshness_window_hours,
            max_items_per_source=self.max_items_per_source,
        )
