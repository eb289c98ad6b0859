"""Course matching: links a news item to relevant affiliate courses."""

import json
import math
import re
from typing import Any

from .bedrock import BedrockClient
from .errors import GenerationError, MatchError
from .logging_config import create_execution_logger
from .models import CourseCatalogEntry, MatchedCourse
from .prompts import MATCH_SYSTEM, MATCH_TEMPLATE

_CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


def parse_json_object(text: str) -> dict[str, Any] | None:
    """Parse a JSON object out of model output.

    Tolerates markdown code fences and prose around the outermost braces.
    """
    if not text:
        return None
    raw = _CODE_FENCE.sub("", text).strip()

    candidates = [raw]
    start, end = raw.find("{"), raw.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw[start : end + 1])

    for candidate in candidates:
        try:
            obj = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


class CourseMatcher:
    """Asks the model which catalog courses relate to a news item."""

    def __init__(
        self,
        client: BedrockClient,
        max_courses: int = 2,
        threshold: float = 0.5,
        execution_id: str | None = None,
    ):
        self.client = client
        self.max_courses = max_courses
        self.threshold = threshold
        self.logger = create_execution_logger("course_matcher", execution_id)

    def build_prompt(
        self, title: str, summary: str, catalog: list[CourseCatalogEntry]
    ) -> str:
        course_list = "\n".join(
            f"{i}. [{course.id}] {course.title}"
            + (f" - {course.description}" if course.description else "")
            for i, course in enumerate(catalog, start=1)
        )
        return MATCH_TEMPLATE.format(
            title=title,
            summary=summary,
            course_list=course_list,
            max_courses=self.max_courses,
            threshold=self.threshold,
        )

    def match_courses(
        self, title: str, summary: str, catalog: list[CourseCatalogEntry]
    ) -> list[MatchedCourse]:
        """Return up to ``max_courses`` catalog courses relevant to the item.

        Never raises: an empty catalog or an unavailable model short-circuits to
        no matches, and provider or format failures degrade to no matches.
        """
        if not catalog or not self.client.is_available():
            return []

        try:
            payload = self._request_recommendations(title, summary, catalog)
            matches = self.select_matches(payload, catalog)
        except MatchError as e:
            self.logger.warning(
                f"Failed to match courses: {e}", item_title=title, error=str(e)
            )
            return []

        self.logger.info(
            "Matched courses",
            item_title=title,
            matched_ids=[m.course_id for m in matches],
        )
        return matches

    def _request_recommendations(
        self, title: str, summary: str, catalog: list[CourseCatalogEntry]
    ) -> dict[str, Any]:
        try:
            text = self.client.generate(
                self.build_prompt(title, summary, catalog),
                system=MATCH_SYSTEM,
                json_output=True,
            )
        except GenerationError as e:
            raise MatchError(f"Course matching call failed: {e}") from e

        payload = parse_json_object(text)
        if payload is None:
            raise MatchError(f"Model response is not a JSON object: {text[:200]!r}")
        return payload

    def select_matches(
        self, payload: dict[str, Any], catalog: list[CourseCatalogEntry]
    ) -> list[MatchedCourse]:
        """Validate model recommendations against the catalog."""
        recommendations = payload.get("courses", [])
        if not isinstance(recommendations, list):
            raise MatchError("'courses' must be a list")

        courses_by_id = {course.id: course for course in catalog}
        matches: dict[str, MatchedCourse] = {}

        for recommendation in recommendations:
            if not isinstance(recommendation, dict):
                continue
            course = courses_by_id.get(str(recommendation.get("courseId", "")))
            if course is None:
                continue
            raw_score = recommendation.get("score")
            # JSON true/false would otherwise pass as 1.0/0.0
            if isinstance(raw_score, bool):
                continue
            try:
                score = float(raw_score)
            except (TypeError, ValueError):
                continue
            if not math.isfinite(score) or not 0.0 <= score <= 1.0:
                continue
            if score < self.threshold or course.id in matches:
                continue
            matches[course.id] = MatchedCourse(
                course_id=course.id,
                title=course.title,
                affiliate_url=course.affiliate_url,
                score=score,
            )

        ranked = sorted(matches.values(), key=lambda m: m.score, reverse=True)
        return ranked[: self.max_courses]
