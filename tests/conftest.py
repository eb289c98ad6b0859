"""Shared fixtures: mocked AWS and feed payload builders."""

import boto3
import pytest
from moto import mock_aws

from daily_news.config import TableConfig

AWS_REGION = "us-east-1"


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never reaches real AWS."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", AWS_REGION)


def _create_table(resource, name, hash_key, range_key=None):
    key_schema = [{"AttributeName": hash_key, "KeyType": "HASH"}]
    attributes = [{"AttributeName": hash_key, "AttributeType": "S"}]
    if range_key:
        key_schema.append({"AttributeName": range_key, "KeyType": "RANGE"})
        attributes.append({"AttributeName": range_key, "AttributeType": "S"})
    resource.create_table(
        TableName=name,
        KeySchema=key_schema,
        AttributeDefinitions=attributes,
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def dynamodb_tables(aws_credentials):
    """All job tables created in a mocked DynamoDB."""
    with mock_aws():
        resource = boto3.resource("dynamodb", region_name=AWS_REGION)
        tables = TableConfig(
            sources="test-sources",
            news="test-news",
            courses="test-courses",
            run_logs="test-run-logs",
            locks="test-locks",
        )
        _create_table(resource, tables.sources, "key")
        _create_table(resource, tables.news, "display_date", "original_url")
        _create_table(resource, tables.courses, "id")
        _create_table(resource, tables.run_logs, "job_name", "executed_at")
        _create_table(resource, tables.locks, "job_name")
        yield tables


def rss_document(items_xml: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel>'
        "<title>Hacker News</title>"
        "<link>https://news.ycombinator.com/</link>"
        "<description>Links for the intellectually curious</description>"
        f"{items_xml}"
        "</channel></rss>"
    )


def atom_document(entries_xml: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<feed xmlns="http://www.w3.org/2005/Atom">'
        "<title>GeekNews</title>"
        "<id>https://news.hada.io/</id>"
        "<updated>2024-06-02T08:00:00+09:00</updated>"
        f"{entries_xml}"
        "</feed>"
    )
