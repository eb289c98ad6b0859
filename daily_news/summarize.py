"""News summarization using Amazon Bedrock."""

from .bedrock import BedrockClient
from .errors import GenerationError, SummarizationError
from .logging_config import create_execution_logger
from .prompts import EMPTY_DESCRIPTION, SUMMARY_SYSTEM, SUMMARY_TEMPLATE

MAX_DESCRIPTION_CHARS = 4000


class Summarizer:
    """Produces a short Korean summary explaining why a news item matters."""

    def __init__(self, client: BedrockClient, execution_id: str | None = None):
        self.client = client
        self.logger = create_execution_logger("summarizer", execution_id)

    def build_prompt(self, title: str, description: str) -> str:
        description = (description or "").strip()[:MAX_DESCRIPTION_CHARS]
        return SUMMARY_TEMPLATE.format(
            title=title, description=description or EMPTY_DESCRIPTION
        )

    def summarize(self, title: str, description: str) -> str:
        """Summarize a news item in 2-3 sentences.

        Raises:
            SummarizationError: If the model is unavailable, the call fails or
                the model returns nothing
        """
        if not self.client.is_available():
            raise SummarizationError("Bedrock model or credentials are not configured")

        self.logger.info("Starting summarization", item_title=title)
        try:
            summary = self.client.generate(
                self.build_prompt(title, description), system=SUMMARY_SYSTEM
            )
        except GenerationError as e:
            raise SummarizationError(f"Summary generation failed: {e}") from e

        if not summary.strip():
            raise SummarizationError("Model returned an empty summary")

        self.logger.info(
            "Successfully generated summary",
            item_title=title,
            summary_length=len(summary),
        )
        return summary.strip()
