"""Unit tests for the run orchestrator."""

import uuid
from datetime import UTC, date, datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from daily_news.config import PipelineConfig
from daily_news.errors import (
    FetchError,
    JobLockedError,
    MalformedFeedError,
    PersistenceError,
    SummarizationError,
)
from daily_news.models import (
    RUN_STATUS_ERROR,
    RUN_STATUS_SUCCESS,
    CourseCatalogEntry,
    FeedItem,
    MatchedCourse,
    NewsRecord,
    Source,
)
from daily_news.pipeline import MESSAGE_FAILED, MESSAGE_NO_NEW_ITEMS, NewsPipeline

KST = timezone(timedelta(hours=9))
RUN_START = datetime(2024, 6, 2, 9, 0, tzinfo=KST)
TODAY = date(2024, 6, 2)


class InMemoryStore:
    """Store double keeping news, run logs and the lock in dictionaries."""

    def __init__(self, courses=None):
        self.news: dict[tuple[date, str], NewsRecord] = {}
        self.courses = courses or []
        self.run_logs = []
        self.lock_owner = None
        self.fail_persist_for: set[str] = set()
        self.fail_existing_urls = False
        self.fail_run_log = False
        self.fail_lock = False

    def acquire_lock(self, job_name, owner_id, ttl_seconds):
        if self.fail_lock:
            raise PersistenceError("lock table unreachable")
        if self.lock_owner is not None:
            return False
        self.lock_owner = owner_id
        return True

    def release_lock(self, job_name, owner_id):
        if self.lock_owner == owner_id:
            self.lock_owner = None

    def existing_urls(self, display_date):
        if self.fail_existing_urls:
            raise PersistenceError("table unavailable")
        return {url for day, url in self.news if day == display_date}

    def list_courses(self):
        return list(self.courses)

    def persist(self, item, ai_summary, matched_courses, display_date):
        if item.link in self.fail_persist_for or (display_date, item.link) in self.news:
            raise PersistenceError(f"cannot store {item.link}")
        record = NewsRecord(
            id=str(uuid.uuid4()),
            title=item.title,
            original_url=item.link,
            source_url=item.source_url,
            description=item.description,
            ai_summary=ai_summary,
            related_courses=list(matched_courses),
            published_at=item.published,
            display_date=display_date,
        )
        self.news[(display_date, item.link)] = record
        return record

    def append_run_log(self, run_log):
        if self.fail_run_log:
            raise PersistenceError("run log table unavailable")
        self.run_logs.append(run_log)


def _source(key: str) -> Source:
    return Source(key=key, name=key.title(), url=f"https://{key.lower()}.example/rss", source_url="")


def _item(n: int, hours_old: float = 1, source: str = "fresh") -> FeedItem:
    return FeedItem(
        title=f"{source} item {n}",
        link=f"https://{source}.example/{n}",
        description=f"description {n}",
        published=RUN_START - timedelta(hours=hours_old),
        source_name=source,
    )


def _feed_processor(feeds: dict) -> Mock:
    """Feeds map a source key to its items, or to the error fetch/parse raises."""
    processor = Mock()

    def fetch(source):
        if isinstance(feeds[source.key], FetchError):
            raise feeds[source.key]
        return source.key

    def parse(raw_text, source):
        if isinstance(feeds[source.key], Exception):
            raise feeds[source.key]
        return list(feeds[source.key])

    processor.fetch.side_effect = fetch
    processor.parse.side_effect = parse
    return processor


def _summarizer() -> Mock:
    summarizer = Mock()
    summarizer.summarize.side_effect = lambda title, description: f"요약: {title}"
    return summarizer


def _matcher(matches=None) -> Mock:
    matcher = Mock()
    matcher.match_courses.return_value = matches or []
    return matcher


def _pipeline(sources, feeds, store=None, summarizer=None, matcher=None, config=None):
    registry = Mock()
    registry.list_enabled_sources.return_value = sources
    return NewsPipeline(
        registry=registry,
        feed_processor=_feed_processor(feeds),
        store=store or InMemoryStore(),
        summarizer=summarizer or _summarizer(),
        matcher=matcher or _matcher(),
        config=config,
        execution_id="test-run",
        clock=lambda: RUN_START,
    )


class TestNewsPipeline:
    def test_fresh_items_processed_and_stale_source_ignored(self):
        store = InMemoryStore()
        feeds = {
            "STALE": [_item(n, hours_old=30, source="stale") for n in range(5)],
            "FRESH": [_item(n, hours_old=n + 1) for n in range(3)],
        }

        result = _pipeline([_source("STALE"), _source("FRESH")], feeds, store=store).run()

        assert result.status == RUN_STATUS_SUCCESS
        assert result.processed_count == 3
        assert result.message == "3개 뉴스 수집 완료"
        assert {r.original_url for r in result.records} == {f"https://fresh.example/{n}" for n in range(3)}
        assert all(r.display_date == TODAY for r in result.records)

        assert len(store.run_logs) == 1
        log = store.run_logs[0]
        assert log.status == RUN_STATUS_SUCCESS
        assert log.processed_count == 3
        assert log.message == "3개 뉴스 수집 완료"
        assert log.executed_at == RUN_START

    def test_second_run_same_day_finds_nothing_new(self):
        store = InMemoryStore()
        feeds = {"FRESH": [_item(n) for n in range(3)]}

        _pipeline([_source("FRESH")], feeds, store=store).run()
        summarizer = _summarizer()
        result = _pipeline([_source("FRESH")], feeds, store=store, summarizer=summarizer).run()

        assert result.processed_count == 0
        assert result.message == MESSAGE_NO_NEW_ITEMS
        assert result.existing_count == 3
        summarizer.summarize.assert_not_called()
        assert len(store.news) == 3
        assert [log.message for log in store.run_logs] == ["3개 뉴스 수집 완료", MESSAGE_NO_NEW_ITEMS]

    def test_freshness_boundary(self):
        feeds = {
            "FRESH": [
                _item(1, hours_old=24),
                _item(2, hours_old=24 + 1 / 3600),
            ]
        }

        result = _pipeline([_source("FRESH")], feeds).run()

        assert [r.original_url for r in result.records] == ["https://fresh.example/1"]

    def test_items_per_source_capped(self):
        feeds = {
            "BIG": [_item(n, hours_old=0.5, source="big") for n in range(15)],
            "SMALL": [_item(n, hours_old=0.5, source="small") for n in range(2)],
        }

        result = _pipeline([_source("BIG"), _source("SMALL")], feeds).run()

        assert result.processed_count == 12
        assert sum(r.original_url.startswith("https://big.") for r in result.records) == 10

    def test_failing_sources_skipped(self):
        feeds = {
            "DOWN": FetchError("HTTP 503"),
            "BROKEN": MalformedFeedError("Invalid RSS: no channel found"),
            "FRESH": [_item(1)],
        }

        pipeline = _pipeline([_source("DOWN"), _source("BROKEN"), _source("FRESH")], feeds)
        result = pipeline.run()

        assert result.status == RUN_STATUS_SUCCESS
        assert result.processed_count == 1
        assert result.metrics["sources_processed"] == 1
        assert len(result.metrics["errors"]) == 2

    def test_no_new_items_skips_enrichment(self):
        store = InMemoryStore()
        summarizer = _summarizer()
        matcher = _matcher()

        result = _pipeline(
            [_source("STALE")],
            {"STALE": [_item(1, hours_old=48)]},
            store=store,
            summarizer=summarizer,
            matcher=matcher,
        ).run()

        assert result.status == RUN_STATUS_SUCCESS
        assert result.message == MESSAGE_NO_NEW_ITEMS
        summarizer.summarize.assert_not_called()
        matcher.match_courses.assert_not_called()
        assert store.run_logs[0].processed_count == 0

    def test_no_enabled_sources(self):
        store = InMemoryStore()

        result = _pipeline([], {}, store=store).run()

        assert result.status == RUN_STATUS_SUCCESS
        assert result.message == MESSAGE_NO_NEW_ITEMS
        assert len(store.run_logs) == 1

    def test_summary_failure_skips_item(self):
        store = InMemoryStore()
        summarizer = Mock()

        def summarize(title, description):
            if title.endswith("item 1"):
                raise SummarizationError("model unavailable")
            return "요약"

        summarizer.summarize.side_effect = summarize

        result = _pipeline(
            [_source("FRESH")], {"FRESH": [_item(n) for n in range(3)]}, store=store, summarizer=summarizer
        ).run()

        assert result.processed_count == 2
        assert "https://fresh.example/1" not in store.existing_urls(TODAY)
        assert store.run_logs[0].message == "2개 뉴스 수집 완료"

    def test_persist_failure_skips_item(self):
        store = InMemoryStore()
        store.fail_persist_for = {"https://fresh.example/0"}

        result = _pipeline([_source("FRESH")], {"FRESH": [_item(n) for n in range(2)]}, store=store).run()

        assert [r.original_url for r in result.records] == ["https://fresh.example/1"]
        assert result.metrics["items_summarized"] == 2
        assert result.metrics["items_persisted"] == 1

    def test_matches_stored_with_record(self):
        catalog = [CourseCatalogEntry(id="x", title="Rust 입문", affiliate_url="https://c/x")]
        store = InMemoryStore(courses=catalog)
        match = MatchedCourse(course_id="x", title="Rust 입문", affiliate_url="https://c/x", score=0.9)
        matcher = _matcher([match])

        result = _pipeline([_source("FRESH")], {"FRESH": [_item(1)]}, store=store, matcher=matcher).run()

        assert result.records[0].related_courses == [match]
        assert result.records[0].ai_summary == "요약: fresh item 1"
        matcher.match_courses.assert_called_once_with("fresh item 1", "요약: fresh item 1", catalog)

    def test_same_link_in_two_sources_stored_once(self):
        shared = _item(1)
        feeds = {"A": [shared], "B": [shared, _item(2)]}

        result = _pipeline([_source("A"), _source("B")], feeds).run()

        assert sorted(r.original_url for r in result.records) == [
            "https://fresh.example/1",
            "https://fresh.example/2",
        ]

    def test_failure_before_sources_logs_error(self):
        store = InMemoryStore()
        store.fail_existing_urls = True

        result = _pipeline([_source("FRESH")], {"FRESH": [_item(1)]}, store=store).run()

        assert result.status == RUN_STATUS_ERROR
        assert result.message == MESSAGE_FAILED
        assert "table unavailable" in result.error
        assert len(store.run_logs) == 1
        assert store.run_logs[0].status == RUN_STATUS_ERROR
        assert store.run_logs[0].processed_count == 0
        assert "table unavailable" in store.run_logs[0].error_detail
        assert store.lock_owner is None

    def test_locked_job_rejected_without_run_log(self):
        store = InMemoryStore()
        store.lock_owner = "another-run"

        with pytest.raises(JobLockedError):
            _pipeline([_source("FRESH")], {"FRESH": [_item(1)]}, store=store).run()

        assert store.run_logs == []
        assert store.news == {}
        assert store.lock_owner == "another-run"

    def test_unreachable_lock_table_logs_error(self):
        store = InMemoryStore()
        store.fail_lock = True
        summarizer = _summarizer()

        result = _pipeline(
            [_source("FRESH")], {"FRESH": [_item(1)]}, store=store, summarizer=summarizer
        ).run()

        assert result.status == RUN_STATUS_ERROR
        assert result.message == MESSAGE_FAILED
        assert "lock table unreachable" in result.error
        assert len(store.run_logs) == 1
        assert store.run_logs[0].status == RUN_STATUS_ERROR
        assert store.run_logs[0].processed_count == 0
        assert "lock table unreachable" in store.run_logs[0].error_detail
        assert store.news == {}
        summarizer.summarize.assert_not_called()

    def test_lock_released_after_run(self):
        store = InMemoryStore()

        _pipeline([_source("FRESH")], {"FRESH": [_item(1)]}, store=store).run()

        assert store.lock_owner is None

    def test_run_log_write_failure_does_not_fail_run(self):
        store = InMemoryStore()
        store.fail_run_log = True

        result = _pipeline([_source("FRESH")], {"FRESH": [_item(1)]}, store=store).run()

        assert result.status == RUN_STATUS_SUCCESS
        assert result.processed_count == 1

    def test_display_day_follows_offset(self):
        late_utc = datetime(2024, 6, 1, 16, 30, tzinfo=UTC)
        registry = Mock()
        registry.list_enabled_sources.return_value = [_source("FRESH")]
        item = FeedItem(
            title="late", link="https://fresh.example/late", description="", published=late_utc
        )

        pipeline = NewsPipeline(
            registry=registry,
            feed_processor=_feed_processor({"FRESH": [item]}),
            store=InMemoryStore(),
            summarizer=_summarizer(),
            matcher=_matcher(),
            config=PipelineConfig(timezone_offset_hours=9),
            clock=lambda: late_utc,
        )
        result = pipeline.run()

        assert result.records[0].display_date == date(2024, 6, 2)
