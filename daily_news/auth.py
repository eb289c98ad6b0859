"""Caller authorization for the trigger and admin endpoints."""

import hmac
from dataclasses import dataclass
from http.cookies import CookieError, SimpleCookie
from typing import Any

ADMIN_COOKIE_NAME = "admin_session"


@dataclass
class AccessCredentials:
    """Shared secrets callers must present."""

    cron_secret: str | None = None
    admin_session_token: str | None = None


def _matches(presented: str | None, expected: str | None) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def get_headers(event: dict[str, Any]) -> dict[str, str]:
    """Request headers with lower-cased names."""
    return {k.lower(): v for k, v in (event.get("headers") or {}).items() if v is not None}


def get_cookie(event: dict[str, Any], name: str) -> str | None:
    """Read a cookie from an API Gateway v1 or v2 event."""
    raw_cookies = list(event.get("cookies") or [])
    header = get_headers(event).get("cookie")
    if header:
        raw_cookies.append(header)

    for raw in raw_cookies:
        jar = SimpleCookie()
        try:
            jar.load(raw)
        except CookieError:
            continue
        if name in jar:
            return jar[name].value
    return None


def is_scheduled_event(event: dict[str, Any]) -> bool:
    """EventBridge schedule invocations; their permission comes from IAM."""
    return event.get("source") == "aws.events" and event.get("detail-type") == "Scheduled Event"


def has_bearer_token(event: dict[str, Any], credentials: AccessCredentials) -> bool:
    authorization = get_headers(event).get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return False
    return _matches(token.strip(), credentials.cron_secret)


def is_admin(event: dict[str, Any], credentials: AccessCredentials) -> bool:
    return _matches(get_cookie(event, ADMIN_COOKIE_NAME), credentials.admin_session_token)


def is_authorized(event: dict[str, Any], credentials: AccessCredentials) -> bool:
    """Whether the caller may trigger ingestion or read its status."""
    return (
        is_scheduled_event(event)
        or has_bearer_token(event, credentials)
        or is_admin(event, credentials)
    )
