"""
Completion service access and JSON task execution.

The pipeline talks to the language model only through the CompletionService
protocol, so tests (and alternative providers) can swap the implementation.
Model output is untrusted: run_json_task extracts the JSON object, validates
it against a pydantic model, and retries once before giving up.
"""

import json
import re
from functools import lru_cache
from typing import Any, Optional, Protocol, Type, TypeVar

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .config import OPENAI_API_KEY, OPENAI_MODEL, logger
from .errors import CompletionServiceError, ConfigurationError, ModelOutputError
from .prompts import JSON_ONLY_SUFFIX, RETRY_SUFFIX, SYSTEM_PROMPT

ModelT = TypeVar("ModelT", bound=BaseModel)


class CompletionService(Protocol):
    """Anything that turns a task prompt into raw model text."""

    async def complete(self, prompt: str) -> str:
        ...


class OpenAICompletionService:
    """CompletionService backed by the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        system_prompt: str = SYSTEM_PROMPT,
        temperature: float = 0.1,
    ):
        """
        Initialize the service.

        Args:
            api_key: OpenAI API key (defaults to OPENAI_API_KEY)
            model: Model to use (defaults to OPENAI_MODEL)
            system_prompt: System message sent with every request
            temperature: Sampling temperature
        """
        self.api_key = api_key if api_key is not None else OPENAI_API_KEY
        self.model = model or OPENAI_MODEL
        self.system_prompt = system_prompt
        self.temperature = temperature
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise ConfigurationError("Missing OPENAI_API_KEY.")
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def complete(self, prompt: str) -> str:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                messages=[
                    {"role": "system", "content": self.system_prompt},
                    {"role": "user", "content": f"{prompt}{JSON_ONLY_SUFFIX}"},
                ],
            )
        except OpenAIError as e:
            logger.error(f"Completion request failed: {e}")
            raise CompletionServiceError(f"Completion service request failed: {type(e).__name__}.") from e
        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise ModelOutputError("Model returned an empty response.")
        return content


@lru_cache(maxsize=1)
def get_completion_service() -> CompletionService:
    """Return the process-wide completion service."""
    return OpenAICompletionService()


# ============================================================================
# JSON Extraction
# ============================================================================

def strip_code_fence(value: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    trimmed = value.strip()
    if not trimmed.startswith("```"):
        return trimmed
    trimmed = re.sub(r"^```(?:json)?\s*", "", trimmed, flags=re.IGNORECASE)
    return re.sub(r"\s*```$", "", trimmed).strip()


def parse_json_from_model(raw: str) -> Any:
    """
    Parse JSON out of model text.

    Tolerates code fences and leading or trailing prose by falling back to
    the outermost {...} span.

    Raises:
        ModelOutputError: If no JSON object can be recovered
    """
    normalized = strip_code_fence(raw)
    try:
        return json.loads(normalized)
    except json.JSONDecodeError:
        pass

    start = normalized.find("{")
    end = normalized.rfind("}")
    if start == -1 or end <= start:
        raise ModelOutputError("Model response did not contain valid JSON.")

    try:
        return json.loads(normalized[start:end + 1])
    except json.JSONDecodeError as exc:
        raise ModelOutputError("Model response did not contain valid JSON.") from exc


# ============================================================================
# JSON Tasks
# ============================================================================

async def _run_once(service: CompletionService, prompt: str, model_cls: Type[ModelT]) -> ModelT:
    raw = await service.complete(prompt)
    payload = parse_json_from_model(raw)
    try:
        return model_cls.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ModelOutputError(
            f"Model response did not match {model_cls.__name__} ({location}: {first['msg']})."
        ) from exc


async def run_json_task(service: CompletionService, prompt: str, model_cls: Type[ModelT]) -> ModelT:
    """
    Send a task prompt and return the validated response model.

    Args:
        service: Completion service to call
        prompt: Task prompt
        model_cls: Pydantic model the JSON response must satisfy

    Returns:
        The validated model instance

    Raises:
        ModelOutputError: If both the first attempt and the retry fail
    """
    try:
        return await _run_once(service, prompt, model_cls)
    except ModelOutputError as exc:
        logger.warning(f"Rejected model output for {model_cls.__name__}, retrying once: {exc.message}")
        return await _run_once(service, f"{prompt}{RETRY_SUFFIX}", model_cls)
