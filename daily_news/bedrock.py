"""Thin Amazon Bedrock client shared by the summarizer and the course matcher."""

import json
import time

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockConfig
from .errors import GenerationError
from .logging_config import create_execution_logger

JSON_ONLY_INSTRUCTION = (
    "Respond with a single valid JSON object only. "
    "Do not add explanations or markdown code fences."
)


class BedrockClient:
    """Sends prompts to a Bedrock model and returns the generated text."""

    def __init__(self, config: BedrockConfig, execution_id: str | None = None):
        self.config = config
        self.logger = create_execution_logger("bedrock", execution_id)
        self.bedrock_client = None
        self.has_credentials = False
        self._initialize_bedrock_client()

    def _initialize_bedrock_client(self) -> None:
        """Initialize Bedrock client with error handling."""
        if not self.config.model_id:
            self.logger.warning("No Bedrock model configured - generation disabled")
            return

        try:
            self.has_credentials = (
                boto3.Session(region_name=self.config.region).get_credentials() is not None
            )
            self.bedrock_client = boto3.client(
                "bedrock-runtime", region_name=self.config.region
            )
            self.logger.info(
                "Initialized Bedrock client",
                region=self.config.region,
                model_id=self.config.model_id,
                has_credentials=self.has_credentials,
            )
        except (BotoCoreError, ClientError) as e:
            self.logger.warning(f"Failed to initialize Bedrock client: {e}", error=str(e))
            self.bedrock_client = None

    def is_available(self) -> bool:
        """Whether a model is configured and callable with resolvable credentials."""
        return bool(self.config.model_id) and self.bedrock_client is not None and self.has_credentials

    @property
    def _is_llama(self) -> bool:
        return "llama" in self.config.model_id.lower()

    def _format_llama_prompt(self, prompt: str, system: str | None) -> str:
        """Format prompt with Llama 3 chat template tags."""
        header = "<|begin_of_text|>"
        if system:
            header += f"<|start_header_id|>system<|end_header_id|>\n\n{system}<|eot_id|>"
        return (
            f"{header}<|start_header_id|>user<|end_header_id|>\n\n{prompt}<|eot_id|>"
            "<|start_header_id|>assistant<|end_header_id|>\n\n"
        )

    def build_request_body(
        self, prompt: str, system: str | None = None, json_output: bool = False
    ) -> dict:
        """Build the invoke_model body for the configured model family."""
        if json_output:
            system = f"{system}\n\n{JSON_ONLY_INSTRUCTION}" if system else JSON_ONLY_INSTRUCTION
        temperature = 0.0 if json_output else self.config.temperature

        # Llama: legacy prompt format with chat template tags
        if self._is_llama:
            return {
                "prompt": self._format_llama_prompt(prompt, system),
                "max_gen_len": self.config.max_tokens,
                "temperature": temperature,
                "top_p": 0.9,
            }

        # Nova / Mistral: messages + inferenceConfig
        body = {
            "messages": [{"role": "user", "content": [{"text": prompt}]}],
            "inferenceConfig": {
                "maxTokens": self.config.max_tokens,
                "temperature": temperature,
            },
        }
        if system:
            body["system"] = [{"text": system}]
        return body

    def extract_text(self, response_body: dict) -> str:
        """Pull the generated text out of a model response."""
        if self._is_llama:
            return (response_body.get("generation") or "").strip()

        try:
            content = response_body["output"]["message"]["content"]
        except (KeyError, TypeError):
            raise GenerationError(
                f"Response missing output/message. Available: {list(response_body.keys())}"
            )
        texts = [part.get("text", "") for part in content if isinstance(part, dict)]
        return "".join(texts).strip()

    def generate(
        self, prompt: str, system: str | None = None, json_output: bool = False
    ) -> str:
        """Run one prompt through the model.

        Returns:
            The generated text, possibly empty

        Raises:
            GenerationError: If the client is unavailable or the call fails
        """
        if not self.bedrock_client or not self.config.model_id:
            raise GenerationError("Bedrock client not available")

        request_body = self.build_request_body(prompt, system, json_output)

        try:
            self.logger.info(
                "Calling Bedrock API",
                model_id=self.config.model_id,
                prompt_length=len(prompt),
                json_output=json_output,
            )
            start_time = time.time()
            response = self.bedrock_client.invoke_model(
                modelId=self.config.model_id,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json",
            )
            response_time_ms = int((time.time() - start_time) * 1000)
            response_body = json.loads(response["body"].read())
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            error_message = e.response.get("Error", {}).get("Message", "")
            self.logger.error(
                f"Bedrock client error: {error_code} - {error_message}",
                error_code=error_code,
            )
            raise GenerationError(f"Bedrock call failed: {error_code} {error_message}") from e
        except (BotoCoreError, ValueError) as e:
            self.logger.error(f"Unexpected error calling Bedrock: {e}", error=str(e))
            raise GenerationError(f"Bedrock call failed: {e}") from e

        text = self.extract_text(response_body)
        self.logger.info(
            "Bedrock response received",
            response_length=len(text),
            response_time_ms=response_time_ms,
        )
        return text
