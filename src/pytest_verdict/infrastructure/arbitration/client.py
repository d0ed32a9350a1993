"""HTTP client for the external arbitration model.

Sends one chat-completion request per failing test and turns the answer
into a bounded score adjustment. Every failure mode degrades to "no
adjustment" so a verdict never waits on, or fails because of, the endpoint.
"""

import json
import threading
from typing import Any, Optional

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pytest_verdict.config.settings import Settings, get_settings
from pytest_verdict.domains.reliability.health import round_half_up
from pytest_verdict.domains.reliability.models import ArbitrationResult, ArbitrationVerdict
from pytest_verdict.infrastructure.arbitration.prompt import PromptProvider, PromptVariables

SYSTEM_MESSAGE = "You are a test flakiness analyzer. Respond only with valid JSON."


class ArbitrationResponse(BaseModel):
    """The exact object the model is asked to return."""
    verdict: ArbitrationVerdict
    confidence_adjustment: float = Field(strict=True, allow_inf_nan=False)
    reasoning: str

    model_config = ConfigDict(extra="forbid", strict=False)


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text[3:]
        if text.lower().startswith("json"):
            text = text[4:]
        if text.endswith("```"):
            text = text[:-3]
    return text.strip()


def parse_arbitration_response(content: Optional[str], max_adjustment: int = 20) -> Optional[ArbitrationResult]:
    """
    Parses the model's answer.

    Returns None unless the content is a single JSON object with exactly the
    fields verdict, confidence_adjustment and reasoning. The adjustment is
    clamped to [-max_adjustment, max_adjustment] and rounded to an integer.
    """
    if not content:
        return None

    try:
        payload = json.loads(_strip_code_fence(content))
    except json.JSONDecodeError as e:
        logger.error(f"Arbitration response is not valid JSON: {e}")
        return None

    if not isinstance(payload, dict) or isinstance(payload.get("confidence_adjustment"), bool):
        logger.error("Arbitration response is not a JSON object with a numeric adjustment")
        return None

    try:
        response = ArbitrationResponse.model_validate(payload)
    except ValidationError as e:
        logger.error(f"Arbitration response has unexpected shape: {e.error_count()} error(s)")
        return None

    adjustment = max(-max_adjustment, min(max_adjustment, response.confidence_adjustment))
    return ArbitrationResult(
        verdict=response.verdict,
        adjustment=round_half_up(adjustment),
        reasoning=response.reasoning.strip() or "No reasoning provided",
    )


class ArbitrationClient:
    """Synchronous client for an OpenAI-compatible chat completion endpoint.

    Example:
        >>> client = ArbitrationClient(get_settings())
        >>> result = client.analyze(variables)  # None when not configured or failing
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        prompts: Optional[PromptProvider] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        """
        Args:
            settings: Endpoint, model, key and timeout. Defaults to get_settings().
            prompts: Source of the prompt template. Defaults to the built-in template.
            client: Optional httpx client (for testing).
        """
        self.settings = settings or get_settings()
        self.prompts = prompts or PromptProvider(ttl=self.settings.prompt_cache_ttl)
        self._client = client
        self._owns_client = client is None
        self._client_lock = threading.Lock()

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.arbitration_api_key)

    def __enter__(self) -> "ArbitrationClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        with self._client_lock:
            if self._owns_client and self._client is not None:
                self._client.close()
                self._client = None

    def _get_client(self) -> httpx.Client:
        # Shared by the verdict engine worker threads
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(timeout=self.settings.arbitration_timeout)
            return self._client

    def analyze(self, variables: PromptVariables) -> Optional[ArbitrationResult]:
        """Returns the model's adjustment, or None on any failure."""
        if not self.is_configured:
            logger.debug("Arbitration endpoint not configured, skipping")
            return None

        try:
            prompt = self.prompts.render(variables)
        except Exception as e:
            logger.error(f"Failed to render arbitration prompt: {e}")
            return None

        body = {
            "model": self.settings.arbitration_model,
            "messages": [
                {"role": "system", "content": SYSTEM_MESSAGE},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.settings.arbitration_temperature,
            "max_tokens": self.settings.arbitration_max_tokens,
        }

        try:
            response = self._get_client().post(
                self.settings.arbitration_url,
                json=body,
                headers={"Authorization": f"Bearer {self.settings.arbitration_api_key}"},
                timeout=self.settings.arbitration_timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"Arbitration request failed: {e}")
            return None

        if response.status_code >= 400:
            logger.error(f"Arbitration endpoint returned {response.status_code}: {response.text[:200]}")
            return None

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Unexpected arbitration response body: {e}")
            return None

        result = parse_arbitration_response(content, self.settings.policy.max_adjustment)
        if result is not None:
            logger.debug(f"Arbitration verdict {result.verdict.value} ({result.adjustment:+d}) for {variables.test_title}")
        return result
