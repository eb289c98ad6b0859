"""Main Lambda handler: ingestion trigger, status and admin endpoints."""

import base64
import json
import os
from dataclasses import asdict
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import boto3
from botocore.exceptions import ClientError

from .auth import AccessCredentials, is_admin, is_authorized, is_scheduled_event
from .bedrock import BedrockClient
from .config import Config
from .dates import display_date
from .errors import (
    InvalidSourceError,
    JobLockedError,
    PersistenceError,
    SourceExistsError,
    SourceNotFoundError,
)
from .logging_config import create_execution_logger, setup_structured_logging
from .matcher import CourseMatcher
from .models import RUN_STATUS_ERROR, RUN_STATUS_SUCCESS, RunResult, Source
from .pipeline import NewsPipeline
from .registry import SourceRegistry
from .rss import FeedProcessor
from .store import NewsStore
from .summarize import Summarizer

setup_structured_logging(os.getenv("LOG_LEVEL", "INFO"))

INGEST_PATH = "/cron/daily-news"
RUN_LOGS_PATH = "/cron-logs"
NEWS_PATH = "/news"
SOURCES_PATH = "/rss-sources"
RUN_LOG_LIMIT = 50


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _response(status_code: int, body: Any) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json; charset=utf-8"},
        "body": json.dumps(body, ensure_ascii=False, default=_json_default),
    }


def _unauthorized() -> dict[str, Any]:
    return _response(401, {"error": "Unauthorized"})


def get_route(event: dict[str, Any]) -> tuple[str, str]:
    """(method, path) of an API Gateway v1/v2 or function URL event; '/api' prefix dropped."""
    method = (
        event.get("requestContext", {}).get("http", {}).get("method")
        or event.get("httpMethod")
        or "GET"
    ).upper()
    path = event.get("rawPath") or event.get("path") or "/"
    if path == "/api" or path.startswith("/api/"):
        path = path[len("/api"):] or "/"
    if len(path) > 1:
        path = path.rstrip("/")
    return method, path


def get_json_body(event: dict[str, Any]) -> dict[str, Any]:
    """Decode the JSON request body; anything that is not an object becomes {}."""
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        body = base64.b64decode(body).decode("utf-8")
    try:
        data = json.loads(body) if body else {}
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    Main Lambda handler.

    Scheduled EventBridge invocations run the ingestion pipeline directly; HTTP
    invocations are routed to the trigger, status, run-log and source
    endpoints after authorization.

    Args:
        event: Lambda event data
        context: Lambda context object

    Returns:
        API Gateway style response dictionary
    """
    execution_id = f"lambda_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"
    main_logger = create_execution_logger("main", execution_id)
    main_logger.log_execution_start(
        lambda_request_id=getattr(context, "aws_request_id", "unknown"),
        lambda_function_name=getattr(context, "function_name", "unknown"),
    )

    try:
        config = Config()

        if is_scheduled_event(event):
            main_logger.info("Scheduled ingestion trigger")
            response = run_ingestion(config, execution_id)
        else:
            method, path = get_route(event)
            main_logger.info(f"HTTP request {method} {path}", method=method, path=path)
            credentials = get_access_credentials(
                config.access_secret_name, config.aws_region, execution_id
            )
            response = route_request(event, method, path, config, credentials, execution_id)

        main_logger.log_execution_end(success=True, status_code=response["statusCode"])
        return response

    except Exception as e:
        error_msg = f"Critical error in Lambda handler: {str(e)}"
        main_logger.error(error_msg, error=str(e))
        main_logger.log_execution_end(success=False, error=error_msg)
        return _response(
            500,
            {
                "error": "뉴스 수집에 실패했습니다.",
                "detail": str(e),
                "execution_id": execution_id,
            },
        )


def route_request(
    event: dict[str, Any],
    method: str,
    path: str,
    config: Config,
    credentials: AccessCredentials,
    execution_id: str,
) -> dict[str, Any]:
    """Dispatch an authorized HTTP request."""
    if path == INGEST_PATH:
        if not is_authorized(event, credentials):
            return _unauthorized()
        if method == "POST":
            return run_ingestion(config, execution_id)
        if method == "GET":
            return ingestion_status(config, execution_id)
        return _response(405, {"error": "Method not allowed"})

    if path == RUN_LOGS_PATH:
        if not is_admin(event, credentials):
            return _unauthorized()
        if method != "GET":
            return _response(405, {"error": "Method not allowed"})
        store = NewsStore(config.get_table_config(), config.aws_region, execution_id)
        logs = store.recent_run_logs(config.get_pipeline_config().job_name, RUN_LOG_LIMIT)
        return _response(200, [asdict(log) for log in logs])

    if path == SOURCES_PATH or path.startswith(SOURCES_PATH + "/"):
        if not is_admin(event, credentials):
            return _unauthorized()
        key = path[len(SOURCES_PATH) + 1:] or None
        return handle_sources_request(event, method, key, config, execution_id)

    if path == NEWS_PATH:
        if method != "GET":
            return _response(405, {"error": "Method not allowed"})
        return list_daily_news(event, config, execution_id)

    return _response(404, {"error": "Not found"})


def list_daily_news(event: dict[str, Any], config: Config, execution_id: str) -> dict[str, Any]:
    """News of one display day (``?date=YYYY-MM-DD``, default today), newest first."""
    requested = (event.get("queryStringParameters") or {}).get("date")
    if requested:
        try:
            day = date.fromisoformat(requested)
        except ValueError:
            return _response(400, {"error": "날짜 형식이 올바르지 않습니다."})
    else:
        day = display_date(datetime.now(UTC), config.get_pipeline_config().timezone_offset_hours)

    store = NewsStore(config.get_table_config(), config.aws_region, execution_id=execution_id)
    records = store.list_news(day)
    epoch = datetime.min.replace(tzinfo=UTC)
    records.sort(key=lambda r: r.published_at or epoch, reverse=True)
    return _response(200, {"date": day.isoformat(), "news": [asdict(r) for r in records]})


def build_pipeline(config: Config, execution_id: str) -> NewsPipeline:
    """Wire the pipeline components from configuration."""
    tables = config.get_table_config()
    pipeline_config = config.get_pipeline_config()
    client = BedrockClient(config.get_bedrock_config(), execution_id=execution_id)

    return NewsPipeline(
        registry=SourceRegistry(
            tables.sources,
            config.get_default_sources(),
            aws_region=config.aws_region,
            execution_id=execution_id,
        ),
        feed_processor=FeedProcessor(
            timeout=pipeline_config.request_timeout, execution_id=execution_id
        ),
        store=NewsStore(tables, config.aws_region, execution_id=execution_id),
        summarizer=Summarizer(client, execution_id=execution_id),
        matcher=CourseMatcher(
            client,
            max_courses=pipeline_config.max_matched_courses,
            threshold=pipeline_config.match_score_threshold,
            execution_id=execution_id,
        ),
        config=pipeline_config,
        execution_id=execution_id,
    )


def run_ingestion(config: Config, execution_id: str) -> dict[str, Any]:
    """Run one pipeline pass and translate the result into a response."""
    pipeline = build_pipeline(config, execution_id)
    try:
        result = pipeline.run()
    except JobLockedError as e:
        return _response(409, {"error": "뉴스 수집이 이미 진행 중입니다.", "detail": str(e)})

    send_cloudwatch_metrics(result, config.aws_region, execution_id)

    if result.status == RUN_STATUS_ERROR:
        return _response(500, {"error": "뉴스 수집에 실패했습니다.", "detail": result.error})

    if not result.records:
        return _response(
            200,
            {"message": "No new news to process", "existingCount": result.existing_count},
        )

    return _response(
        200,
        {
            "message": "Daily news updated",
            "processed": result.processed_count,
            "news": [{"id": r.id, "title": r.title} for r in result.records],
        },
    )


def ingestion_status(config: Config, execution_id: str) -> dict[str, Any]:
    """Today's ingested-item count, for health checks."""
    now = datetime.now(UTC)
    today = display_date(now, config.get_pipeline_config().timezone_offset_hours)
    store = NewsStore(config.get_table_config(), config.aws_region, execution_id=execution_id)
    return _response(
        200,
        {
            "status": "ok",
            "todayNewsCount": store.count_for_date(today),
            "lastCheck": now.isoformat(),
        },
    )


def handle_sources_request(
    event: dict[str, Any],
    method: str,
    key: str | None,
    config: Config,
    execution_id: str,
) -> dict[str, Any]:
    """Operator management of feed sources."""
    registry = SourceRegistry(
        config.get_table_config().sources,
        config.get_default_sources(),
        aws_region=config.aws_region,
        execution_id=execution_id,
    )

    try:
        if key is None and method == "GET":
            return _response(200, [asdict(source) for source in registry.list_sources()])

        if key is None and method == "POST":
            body = get_json_body(event)
            fields = [body.get(name) for name in ("key", "name", "url", "sourceUrl")]
            if not all(isinstance(value, str) and value.strip() for value in fields):
                return _response(400, {"error": "모든 필드를 입력해주세요."})
            source = registry.add_source(
                Source(key=fields[0], name=fields[1], url=fields[2], source_url=fields[3])
            )
            return _response(201, asdict(source))

        if key is not None and method == "PATCH":
            enabled = get_json_body(event).get("isEnabled")
            if not isinstance(enabled, bool):
                return _response(400, {"error": "isEnabled 필드가 필요합니다."})
            return _response(200, asdict(registry.set_enabled(key, enabled)))

        if key is not None and method == "DELETE":
            registry.delete_source(key)
            return _response(200, {"message": "삭제되었습니다."})

    except InvalidSourceError:
        return _response(400, {"error": "RSS URL은 https://로 시작해야 합니다."})
    except SourceExistsError:
        return _response(400, {"error": "이미 존재하는 소스 키입니다."})
    except SourceNotFoundError:
        return _response(404, {"error": "RSS 소스를 찾을 수 없습니다."})
    except PersistenceError as e:
        create_execution_logger("main", execution_id).error(
            f"Source operation failed: {e}", error=str(e)
        )
        return _response(500, {"error": "RSS 소스 처리에 실패했습니다."})

    return _response(405, {"error": "Method not allowed"})


def get_access_credentials(
    secret_name: str, aws_region: str, execution_id: str
) -> AccessCredentials:
    """
    Retrieve caller credentials from AWS Secrets Manager.

    The secret is a JSON object holding the scheduler bearer token
    (``cron_secret``) and the operator session token
    (``admin_session_token``). A plain string secret is taken as the cron
    secret alone. Secret values are never logged.

    Raises:
        RuntimeError: If the secret cannot be retrieved or has no usable value
    """
    secrets_logger = create_execution_logger("secrets_manager", execution_id)

    if not secret_name or not secret_name.strip():
        raise ValueError("Secret name cannot be empty")

    try:
        secrets_logger.info(f"Retrieving access credentials from Secrets Manager: {secret_name}")
        secrets_client = boto3.client("secretsmanager", region_name=aws_region)
        response = secrets_client.get_secret_value(SecretId=secret_name)

        secret_value = response.get("SecretString", "")
        if not secret_value or not secret_value.strip():
            raise ValueError(f"Secret {secret_name} contains empty value")

        try:
            secret_data = json.loads(secret_value)
        except json.JSONDecodeError:
            return AccessCredentials(cron_secret=secret_value.strip())

        if not isinstance(secret_data, dict):
            raise ValueError(f"JSON secret {secret_name} must be an object")

        def _first(*names: str) -> str | None:
            for name in names:
                value = secret_data.get(name)
                if isinstance(value, str) and value.strip():
                    return value.strip()
            return None

        credentials = AccessCredentials(
            cron_secret=_first("cron_secret", "CRON_SECRET"),
            admin_session_token=_first("admin_session_token", "ADMIN_SESSION_TOKEN"),
        )
        if not credentials.cron_secret and not credentials.admin_session_token:
            raise ValueError(f"No credentials found in JSON secret {secret_name}")

        secrets_logger.info(
            "Successfully retrieved access credentials",
            has_cron_secret=credentials.cron_secret is not None,
            has_admin_session_token=credentials.admin_session_token is not None,
        )
        return credentials

    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        secrets_logger.error(f"AWS Secrets Manager error retrieving {secret_name}: {error_code}")
        raise RuntimeError(f"Failed to retrieve secret {secret_name}") from e
    except ValueError as e:
        secrets_logger.error(f"Invalid secret format for {secret_name}: {e}")
        raise RuntimeError(f"Invalid secret format for {secret_name}") from e


def send_cloudwatch_metrics(result: RunResult, aws_region: str, execution_id: str) -> None:
    """
    Send custom run metrics to CloudWatch.

    Args:
        result: Outcome of the pipeline run
        aws_region: AWS region for CloudWatch client
        execution_id: Execution ID for logging context
    """
    metrics_logger = create_execution_logger("cloudwatch_metrics", execution_id)
    metrics = result.metrics
    execution_success = result.status == RUN_STATUS_SUCCESS

    try:
        metrics_logger.info("Sending metrics to CloudWatch", metrics=metrics)
        cloudwatch = boto3.client("cloudwatch", region_name=aws_region)

        counters = [
            ("SourcesProcessed", metrics.get("sources_processed", 0)),
            ("ItemsFound", metrics.get("items_found", 0)),
            ("ItemsFiltered", metrics.get("items_filtered", 0)),
            ("ItemsSummarized", metrics.get("items_summarized", 0)),
            ("ItemsMatched", metrics.get("items_matched", 0)),
            ("ItemsPersisted", metrics.get("items_persisted", 0)),
            ("Errors", len(metrics.get("errors", []))),
        ]
        metric_data = [
            {"MetricName": name, "Value": value, "Unit": "Count"} for name, value in counters
        ]
        status_dimension = [
            {"Name": "Status", "Value": "Success" if execution_success else "Failure"}
        ]
        metric_data.append(
            {
                "MetricName": "ExecutionSuccess",
                "Value": 1 if execution_success else 0,
                "Unit": "Count",
                "Dimensions": status_dimension,
            }
        )
        metric_data.append(
            {
                "MetricName": "ExecutionFailure",
                "Value": 0 if execution_success else 1,
                "Unit": "Count",
                "Dimensions": status_dimension,
            }
        )
        metric_data.append(
            {"MetricName": "DurationMs", "Value": result.duration_ms, "Unit": "Milliseconds"}
        )

        # CloudWatch limit is 20 metrics per call
        batch_size = 20
        for i in range(0, len(metric_data), batch_size):
            batch = metric_data[i : i + batch_size]
            cloudwatch.put_metric_data(Namespace="DailyNews-Ingestion", MetricData=batch)

        metrics_logger.info(
            "Successfully sent metrics to CloudWatch",
            metrics_sent=len(metric_data),
            namespace="DailyNews-Ingestion",
            execution_success=execution_success,
        )

    except Exception as e:
        metrics_logger.error(f"Failed to send CloudWatch metrics: {e}", error=str(e))
        # Don't raise - metrics failure shouldn't break the main flow
