"""DynamoDB persistence for news records, the course catalog, run logs and job locks."""

import time
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from .config import TableConfig
from .errors import PersistenceError
from .logging_config import create_execution_logger
from .models import CourseCatalogEntry, FeedItem, MatchedCourse, NewsRecord, RunLog


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _matched_course_to_item(course: MatchedCourse) -> dict[str, Any]:
    return {
        "courseId": course.course_id,
        "title": course.title,
        "affiliateUrl": course.affiliate_url,
        "score": Decimal(str(course.score)),
    }


def _matched_course_from_item(item: dict[str, Any]) -> MatchedCourse:
    return MatchedCourse(
        course_id=item["courseId"],
        title=item.get("title", ""),
        affiliate_url=item.get("affiliateUrl", ""),
        score=float(item.get("score", 0)),
    )


def news_record_from_item(item: dict[str, Any]) -> NewsRecord:
    return NewsRecord(
        id=item["id"],
        title=item.get("title", ""),
        original_url=item["original_url"],
        source_url=item.get("source_url", ""),
        description=item.get("description", ""),
        ai_summary=item.get("ai_summary"),
        related_courses=[
            _matched_course_from_item(c) for c in item.get("related_courses", [])
        ],
        published_at=_parse_datetime(item.get("published_at")),
        display_date=date.fromisoformat(item["display_date"]),
        created_at=_parse_datetime(item.get("created_at")),
    )


def run_log_from_item(item: dict[str, Any]) -> RunLog:
    return RunLog(
        job_name=item["job_name"],
        status=item["status"],
        message=item.get("message", ""),
        processed_count=int(item.get("processed_count", 0)),
        duration_ms=int(item.get("duration_ms", 0)),
        executed_at=datetime.fromisoformat(item["executed_at"]),
        error_detail=item.get("error_detail"),
    )


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class NewsStore:
    """Reads and writes the tables the ingestion job owns."""

    def __init__(
        self,
        tables: TableConfig,
        aws_region: str = "us-east-1",
        execution_id: str | None = None,
    ):
        """Initialize the store with DynamoDB configuration.

        Args:
            tables: Table names
            aws_region: AWS region for the DynamoDB resource
            execution_id: Execution ID for logging context
        """
        self.tables = tables
        self.aws_region = aws_region
        self.logger = create_execution_logger("news_store", execution_id)
        self.dynamodb = boto3.resource("dynamodb", region_name=aws_region)
        self.news_table = self.dynamodb.Table(tables.news)
        self.courses_table = self.dynamodb.Table(tables.courses)
        self.run_logs_table = self.dynamodb.Table(tables.run_logs)
        self.locks_table = self.dynamodb.Table(tables.locks)

        self.logger.info(
            "NewsStore initialized", news_table=tables.news, aws_region=aws_region
        )

    def _query_all(self, table, **kwargs) -> list[dict[str, Any]]:
        items = []
        while True:
            response = table.query(**kwargs)
            items.extend(response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                return items
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

    def existing_urls(self, display_date: date) -> set[str]:
        """Links already ingested for a display day."""
        try:
            items = self._query_all(
                self.news_table,
                KeyConditionExpression=Key("display_date").eq(display_date.isoformat()),
                ProjectionExpression="original_url",
            )
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"Failed to load existing news for {display_date}: {e}") from e
        return {item["original_url"] for item in items}

    def count_for_date(self, display_date: date) -> int:
        """Number of news records stored for a display day."""
        kwargs = {
            "KeyConditionExpression": Key("display_date").eq(display_date.isoformat()),
            "Select": "COUNT",
        }
        count = 0
        try:
            while True:
                response = self.news_table.query(**kwargs)
                count += response.get("Count", 0)
                if "LastEvaluatedKey" not in response:
                    return count
                kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"Failed to count news for {display_date}: {e}") from e

    def list_news(self, display_date: date) -> list[NewsRecord]:
        """All news records of a display day."""
        try:
            items = self._query_all(
                self.news_table,
                KeyConditionExpression=Key("display_date").eq(display_date.isoformat()),
            )
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"Failed to list news for {display_date}: {e}") from e
        return [news_record_from_item(item) for item in items]

    def persist(
        self,
        item: FeedItem,
        ai_summary: str | None,
        matched_courses: list[MatchedCourse],
        display_date: date,
    ) -> NewsRecord:
        """Create the news record for a feed item.

        Raises:
            PersistenceError: If the link is already stored for the day or the
                write fails
        """
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
            created_at=datetime.now(UTC),
        )
        db_item = {
            "display_date": display_date.isoformat(),
            "original_url": record.original_url,
            "id": record.id,
            "title": record.title,
            "source_url": record.source_url,
            "description": record.description,
            "related_courses": [_matched_course_to_item(c) for c in record.related_courses],
            "created_at": record.created_at.isoformat(),
        }
        if ai_summary is not None:
            db_item["ai_summary"] = ai_summary
        if record.published_at is not None:
            db_item["published_at"] = record.published_at.isoformat()

        try:
            self.news_table.put_item(
                Item=db_item,
                ConditionExpression="attribute_not_exists(original_url)",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise PersistenceError(
                    f"News already stored for {display_date}: {item.link}"
                ) from e
            raise PersistenceError(f"Failed to store news {item.link}: {e}") from e
        except BotoCoreError as e:
            raise PersistenceError(f"Failed to store news {item.link}: {e}") from e

        self.logger.info(
            "Stored news record",
            item_title=record.title,
            news_id=record.id,
            display_date=display_date.isoformat(),
        )
        return record

    def list_courses(self) -> list[CourseCatalogEntry]:
        """Snapshot of the course catalog."""
        items = []
        kwargs: dict[str, Any] = {}
        try:
            while True:
                response = self.courses_table.scan(**kwargs)
                items.extend(response.get("Items", []))
                if "LastEvaluatedKey" not in response:
                    break
                kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"Failed to load course catalog: {e}") from e

        return [
            CourseCatalogEntry(
                id=item["id"],
                title=item.get("title", ""),
                affiliate_url=item.get("affiliate_url", ""),
                description=item.get("description"),
            )
            for item in items
        ]

    def append_run_log(self, run_log: RunLog) -> None:
        """Append one run log entry."""
        db_item = {
            "job_name": run_log.job_name,
            "executed_at": run_log.executed_at.isoformat(),
            "status": run_log.status,
            "message": run_log.message,
            "processed_count": run_log.processed_count,
            "duration_ms": run_log.duration_ms,
        }
        if run_log.error_detail:
            db_item["error_detail"] = run_log.error_detail

        try:
            self.run_logs_table.put_item(Item=db_item)
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"Failed to write run log: {e}") from e

        self.logger.info(
            "Stored run log",
            job_name=run_log.job_name,
            status=run_log.status,
            processed_count=run_log.processed_count,
        )

    def recent_run_logs(self, job_name: str, limit: int = 50) -> list[RunLog]:
        """Latest run logs of a job, newest first."""
        try:
            response = self.run_logs_table.query(
                KeyConditionExpression=Key("job_name").eq(job_name),
                ScanIndexForward=False,
                Limit=limit,
            )
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"Failed to read run logs: {e}") from e
        return [run_log_from_item(item) for item in response.get("Items", [])]

    def acquire_lock(self, job_name: str, owner_id: str, ttl_seconds: int) -> bool:
        """Take the single-flight lock of a job.

        An expired lock is taken over. Returns False when another owner holds a
        live lock.
        """
        now = int(time.time())
        try:
            self.locks_table.put_item(
                Item={
                    "job_name": job_name,
                    "owner_id": owner_id,
                    "acquired_at": now,
                    "expires_at": now + ttl_seconds,
                },
                ConditionExpression="attribute_not_exists(job_name) OR expires_at < :now",
                ExpressionAttributeValues={":now": now},
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                self.logger.warning("Job lock is held by another run", job_name=job_name)
                return False
            raise PersistenceError(f"Failed to acquire lock for {job_name}: {e}") from e
        except BotoCoreError as e:
            raise PersistenceError(f"Failed to acquire lock for {job_name}: {e}") from e

        self.logger.info("Acquired job lock", job_name=job_name, owner_id=owner_id)
        return True

    def release_lock(self, job_name: str, owner_id: str) -> None:
        """Release a lock held by ``owner_id``; a lock taken over by someone else is left alone."""
        try:
            self.locks_table.delete_item(
                Key={"job_name": job_name},
                ConditionExpression="owner_id = :owner",
                ExpressionAttributeValues={":owner": owner_id},
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                self.logger.warning(
                    "Job lock no longer owned by this run", job_name=job_name, owner_id=owner_id
                )
                return
            raise PersistenceError(f"Failed to release lock for {job_name}: {e}") from e
        except BotoCoreError as e:
            raise PersistenceError(f"Failed to release lock for {job_name}: {e}") from e

        self.logger.info("Released job lock", job_name=job_name, owner_id=owner_id)
