"""Source registry backed by DynamoDB."""

from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import (
    InvalidSourceError,
    PersistenceError,
    SourceExistsError,
    SourceNotFoundError,
)
from .logging_config import create_execution_logger
from .models import Source

# "key" is a DynamoDB reserved word
_KEY_NAMES = {"#k": "key"}


def source_from_item(item: dict[str, Any]) -> Source:
    created_at = item.get("created_at")
    return Source(
        key=item["key"],
        name=item.get("name", item["key"]),
        url=item["url"],
        source_url=item.get("source_url", ""),
        enabled=bool(item.get("is_enabled", True)),
        created_at=datetime.fromisoformat(created_at) if created_at else None,
    )


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class SourceRegistry:
    """Holds the feed sources the pipeline polls.

    An empty registry is seeded with the default sources on first read.
    Seeding uses conditional puts keyed on the source key, so concurrent
    first reads cannot create duplicates.
    """

    def __init__(
        self,
        table_name: str,
        default_sources: list[Source],
        aws_region: str = "us-east-1",
        execution_id: str | None = None,
    ):
        self.table_name = table_name
        self.default_sources = default_sources
        self.logger = create_execution_logger("source_registry", execution_id)
        self.dynamodb = boto3.resource("dynamodb", region_name=aws_region)
        self.table = self.dynamodb.Table(table_name)

    def _scan_sources(self) -> list[Source]:
        items = []
        kwargs: dict[str, Any] = {}
        while True:
            response = self.table.scan(**kwargs)
            items.extend(response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                break
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

        sources = [source_from_item(item) for item in items]
        epoch = datetime.min.replace(tzinfo=UTC)
        sources.sort(key=lambda s: (s.created_at or epoch, s.key))
        return sources

    def _put_source(self, source: Source) -> bool:
        """Create a source unless its key exists. Returns whether it was created."""
        created_at = source.created_at or datetime.now(UTC)
        try:
            self.table.put_item(
                Item={
                    "key": source.key,
                    "name": source.name,
                    "url": source.url,
                    "source_url": source.source_url,
                    "is_enabled": source.enabled,
                    "created_at": created_at.isoformat(),
                },
                ConditionExpression="attribute_not_exists(#k)",
                ExpressionAttributeNames=_KEY_NAMES,
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise
        source.created_at = created_at
        return True

    def seed_defaults(self) -> int:
        """Register the default sources; existing keys are left untouched."""
        created = 0
        seeded_at = datetime.now(UTC)
        try:
            for index, default in enumerate(self.default_sources):
                source = Source(
                    key=default.key,
                    name=default.name,
                    url=default.url,
                    source_url=default.source_url,
                    enabled=default.enabled,
                    # keep the declared order when listing
                    created_at=seeded_at + timedelta(microseconds=index),
                )
                if self._put_source(source):
                    created += 1
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"Failed to seed default sources: {e}") from e

        self.logger.info("Seeded default sources", created=created)
        return created

    def list_sources(self) -> list[Source]:
        """All sources, seeding the defaults when the registry is empty.

        Raises:
            PersistenceError: If the table cannot be read or seeded
        """
        try:
            sources = self._scan_sources()
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"Failed to read sources: {e}") from e

        if not sources:
            self.seed_defaults()
            try:
                sources = self._scan_sources()
            except (BotoCoreError, ClientError) as e:
                raise PersistenceError(f"Failed to read sources: {e}") from e
        return sources

    def list_enabled_sources(self) -> list[Source]:
        """Enabled sources; an unreachable store yields an empty list."""
        try:
            sources = self.list_sources()
        except PersistenceError as e:
            self.logger.error(f"Source registry unavailable: {e}", error=str(e))
            return []

        enabled = [source for source in sources if source.enabled]
        self.logger.info(
            "Loaded enabled sources",
            total_sources=len(sources),
            enabled_sources=len(enabled),
        )
        return enabled

    def add_source(self, source: Source) -> Source:
        """Register a new source.

        Raises:
            InvalidSourceError: If the feed URL is not HTTPS
            SourceExistsError: If the key is already registered
            PersistenceError: If the write fails
        """
        parsed_url = urlparse(source.url)
        if parsed_url.scheme != "https" or not parsed_url.netloc:
            raise InvalidSourceError(f"Feed URL must use HTTPS protocol: {source.url}")

        try:
            created = self._put_source(source)
        except (BotoCoreError, ClientError) as e:
            raise PersistenceError(f"Failed to create source {source.key}: {e}") from e
        if not created:
            raise SourceExistsError(f"Source key already exists: {source.key}")

        self.logger.info("Registered source", source_key=source.key, feed_url=source.url)
        return source

    def set_enabled(self, key: str, enabled: bool) -> Source:
        """Toggle a source.

        Raises:
            SourceNotFoundError: If no source has this key
        """
        try:
            response = self.table.update_item(
                Key={"key": key},
                UpdateExpression="SET is_enabled = :enabled",
                ConditionExpression="attribute_exists(#k)",
                ExpressionAttributeNames=_KEY_NAMES,
                ExpressionAttributeValues={":enabled": enabled},
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise SourceNotFoundError(f"Unknown source: {key}") from e
            raise PersistenceError(f"Failed to update source {key}: {e}") from e
        except BotoCoreError as e:
            raise PersistenceError(f"Failed to update source {key}: {e}") from e

        self.logger.info("Updated source", source_key=key, enabled=enabled)
        return source_from_item(response["Attributes"])

    def delete_source(self, key: str) -> None:
        """Remove a source.

        Raises:
            SourceNotFoundError: If no source has this key
        """
        try:
            self.table.delete_item(
                Key={"key": key},
                ConditionExpression="attribute_exists(#k)",
                ExpressionAttributeNames=_KEY_NAMES,
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise SourceNotFoundError(f"Unknown source: {key}") from e
            raise PersistenceError(f"Failed to delete source {key}: {e}") from e
        except BotoCoreError as e:
            raise PersistenceError(f"Failed to delete source {key}: {e}") from e

        self.logger.info("Deleted source", source_key=key)
