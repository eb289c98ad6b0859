"""Run orchestrator for the daily news ingestion job.

One run: load sources, fetch, parse and filter each source, then summarize,
match and persist each new item, and finally append exactly one run log.
Failures are isolated per source (fetch/parse) and per item
(summarize/persist); course matching never blocks persistence.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime

from .config import PipelineConfig
from .dates import display_date, freshness_window_start
from .dedup import filter_items
from .errors import JobLockedError, PersistenceError, SummarizationError
from .logging_config import create_execution_logger
from .matcher import CourseMatcher
from .models import (
    RUN_STATUS_ERROR,
    RUN_STATUS_SUCCESS,
    FeedItem,
    NewsRecord,
    RunLog,
    RunResult,
)
from .registry import SourceRegistry
from .rss import FeedProcessor
from .store import NewsStore
from .summarize import Summarizer

MESSAGE_NO_NEW_ITEMS = "새로운 뉴스 없음"
MESSAGE_FAILED = "뉴스 수집 실패"


def _completed_message(count: int) -> str:
    return f"{count}개 뉴스 수집 완료"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class NewsPipeline:
    """Ties the registry, fetcher, filter, enrichers and store together."""

    def __init__(
        self,
        registry: SourceRegistry,
        feed_processor: FeedProcessor,
        store: NewsStore,
        summarizer: Summarizer,
        matcher: CourseMatcher,
        config: PipelineConfig | None = None,
        execution_id: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.registry = registry
        self.feed_processor = feed_processor
        self.store = store
        self.summarizer = summarizer
        self.matcher = matcher
        self.config = config or PipelineConfig()
        self.clock = clock
        self.logger = create_execution_logger("pipeline", execution_id)
        self.execution_id = self.logger.execution_id

    def run(self) -> RunResult:
        """Execute one run under the job lock.

        An unreachable lock table fails the run like any other failure
        before the sources are processed.

        Raises:
            JobLockedError: If another run of the job is in progress
        """
        job_name = self.config.job_name
        try:
            acquired = self.store.acquire_lock(
                job_name, self.execution_id, self.config.lock_ttl_seconds
            )
        except PersistenceError as e:
            return self._fail_before_sources(self.clock(), time.monotonic(), e, {"errors": []})
        if not acquired:
            raise JobLockedError(f"Job {job_name} is already running")

        try:
            return self._run()
        finally:
            try:
                self.store.release_lock(job_name, self.execution_id)
            except PersistenceError as e:
                # the lock expires on its own after lock_ttl_seconds
                self.logger.error(f"Failed to release job lock: {e}", error=str(e))

    def _run(self) -> RunResult:
        run_start = self.clock()
        started = time.monotonic()
        self.logger.log_execution_start(run_start=run_start.isoformat())

        metrics = {
            "sources_processed": 0,
            "items_found": 0,
            "items_filtered": 0,
            "items_summarized": 0,
            "items_matched": 0,
            "items_persisted": 0,
            "errors": [],
        }

        try:
            today = display_date(run_start, self.config.timezone_offset_hours)
            window_start = freshness_window_start(run_start, self.config.freshness_window_hours)

            sources = self.registry.list_enabled_sources()
            existing_urls = self.store.existing_urls(today)
            catalog = self.store.list_courses()
        except Exception as e:
            return self._fail_before_sources(run_start, started, e, metrics)

        self.logger.info(
            f"Processing {len(sources)} sources",
            source_count=len(sources),
            display_date=today.isoformat(),
            existing_count=len(existing_urls),
            course_count=len(catalog),
        )

        new_items = self._collect_new_items(sources, existing_urls, window_start, metrics)

        if not new_items:
            duration_ms = self._elapsed_ms(started)
            self._write_run_log(RUN_STATUS_SUCCESS, MESSAGE_NO_NEW_ITEMS, 0, duration_ms, run_start)
            self.logger.log_execution_end(success=True, metrics=metrics)
            return RunResult(
                status=RUN_STATUS_SUCCESS,
                message=MESSAGE_NO_NEW_ITEMS,
                existing_count=len(existing_urls),
                duration_ms=duration_ms,
                metrics=metrics,
            )

        records = []
        for item in new_items:
            record = self._process_item(item, catalog, today, metrics)
            if record is not None:
                records.append(record)

        duration_ms = self._elapsed_ms(started)
        message = _completed_message(len(records))
        self._write_run_log(RUN_STATUS_SUCCESS, message, len(records), duration_ms, run_start)

        self.logger.log_metrics(metrics)
        self.logger.log_execution_end(success=True, processed=len(records))
        return RunResult(
            status=RUN_STATUS_SUCCESS,
            message=message,
            records=records,
            existing_count=len(existing_urls),
            duration_ms=duration_ms,
            metrics=metrics,
        )

    def _fail_before_sources(
        self, run_start: datetime, started: float, error: Exception, metrics: dict
    ) -> RunResult:
        error_msg = f"Run failed before processing sources: {error}"
        self.logger.error(error_msg, error=str(error))
        metrics["errors"].append(error_msg)
        duration_ms = self._elapsed_ms(started)
        self._write_run_log(
            RUN_STATUS_ERROR, MESSAGE_FAILED, 0, duration_ms, run_start, error_detail=str(error)
        )
        self.logger.log_execution_end(success=False, metrics=metrics)
        return RunResult(
            status=RUN_STATUS_ERROR,
            message=MESSAGE_FAILED,
            duration_ms=duration_ms,
            error=str(error),
            metrics=metrics,
        )

    def _collect_new_items(self, sources, existing_urls, window_start, metrics) -> list[FeedItem]:
        """Fetch, parse and filter every source; a failing source is skipped."""
        seen = set(existing_urls)
        new_items = []

        for source in sources:
            try:
                raw_text = self.feed_processor.fetch(source)
                items = self.feed_processor.parse(raw_text, source)
            except Exception as e:
                error_msg = f"Failed to process source {source.name}: {e}"
                self.logger.error(error_msg, source_name=source.name, error=str(e))
                metrics["errors"].append(error_msg)
                continue

            fresh = filter_items(items, seen, window_start, self.config.max_items_per_source)
            seen.update(item.link for item in fresh)
            new_items.extend(fresh)

            metrics["sources_processed"] += 1
            metrics["items_found"] += len(items)
            metrics["items_filtered"] += len(items) - len(fresh)
            self.logger.log_feed_processing(source.name, len(items), len(fresh))

        return new_items

    def _process_item(self, item, catalog, today, metrics) -> NewsRecord | None:
        """Summarize, match and persist one item; returns None when it was skipped."""
        try:
            summary = self.summarizer.summarize(item.title, item.description)
            metrics["items_summarized"] += 1

            matched = self.matcher.match_courses(item.title, summary, catalog)
            if matched:
                metrics["items_matched"] += 1

            record = self.store.persist(item, summary, matched, today)
        except (SummarizationError, PersistenceError) as e:
            error_msg = f"Failed to process item '{item.title}': {e}"
            self.logger.log_item_processing(item.title, "skipped", success=False, error=str(e))
            metrics["errors"].append(error_msg)
            return None
        except Exception as e:
            error_msg = f"Unexpected error processing item '{item.title}': {e}"
            self.logger.log_item_processing(item.title, "failed", success=False, error=str(e))
            metrics["errors"].append(error_msg)
            return None

        metrics["items_persisted"] += 1
        self.logger.log_item_processing(item.title, "persisted", news_id=record.id)
        return record

    def _write_run_log(
        self,
        status: str,
        message: str,
        processed_count: int,
        duration_ms: int,
        executed_at: datetime,
        error_detail: str | None = None,
    ) -> None:
        run_log = RunLog(
            job_name=self.config.job_name,
            status=status,
            message=message,
            processed_count=processed_count,
            duration_ms=duration_ms,
            executed_at=executed_at,
            error_detail=error_detail,
        )
        try:
            self.store.append_run_log(run_log)
        except PersistenceError as e:
            self.logger.error(f"Failed to write run log: {e}", error=str(e), run_status=status)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
