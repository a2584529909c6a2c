from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from openai import AsyncOpenAI
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .schemas import OracleConfig

logger = logging.getLogger(__name__)

PLAIN_JSON_INSTRUCTION = "Return only a valid JSON object with double-quoted keys and strings."


class LlmError(Exception):
    pass


class LlmValidationError(LlmError):
    def __init__(self, obj: Dict[str, Any], raw_text: str, validation_error: str):
        super().__init__(f"Schema validation failed: {validation_error}")
        self.obj = obj
        self.raw_text = raw_text
        self.validation_error = validation_error


def parse_json_object(content: str) -> Dict[str, Any]:
    try:
        obj = json.loads(content)
    except json.JSONDecodeError as e:
        raise LlmError(f"Invalid JSON returned: {e}: {content[:200]}") from e
    if not isinstance(obj, dict):
        raise LlmError(f"Expected a JSON object, got {type(obj).__name__}")
    return obj


class LlmJSONClient:
    """Async chat-completions client that always returns a parsed JSON object.

    Structured output (``json_schema``) is requested first; models that reject
    it are asked again for plain JSON. Each request is retried according to
    ``OracleConfig.max_attempts`` / ``retry_backoff``.
    """

    def __init__(self, config: Optional[OracleConfig] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or OracleConfig()
        self.client = client or AsyncOpenAI(timeout=self.config.timeout)

    def _retrying(self) -> AsyncRetrying:
        backoff = self.config.retry_backoff
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self.config.max_attempts)),
            wait=wait_exponential(multiplier=backoff, min=backoff, max=10 * backoff),
            retry=retry_if_exception_type(LlmError),
        )

    async def _complete(self, messages: List[Dict[str, Any]], json_schema: Optional[Dict]) -> str:
        response_format = (
            {"type": "json_schema", "json_schema": json_schema} if json_schema is not None else {"type": "json_object"}
        )
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                temperature=self.config.temperature,
                messages=messages,
                response_format=response_format,
            )
        except Exception as e1:
            logger.debug("Structured output request failed (%s), asking for plain JSON", e1)
            try:
                response = await self.client.chat.completions.create(
                    model=self.config.model,
                    temperature=self.config.temperature,
                    messages=messages + [{"role": "system", "content": PLAIN_JSON_INSTRUCTION}],
                )
            except Exception as e2:
                raise LlmError(f"OpenAI request failed: {e2}") from e2
        try:
            return response.choices[0].message.content or "{}"
        except (AttributeError, IndexError) as e:
            raise LlmError(f"No content in response: {e}") from e

    async def create_json(
        self,
        messages: List[Dict[str, Any]],
        json_schema: Optional[Dict] = None,
    ) -> Tuple[Dict[str, Any], str]:
        async for attempt in self._retrying():
            with attempt:
                content = await self._complete(messages, json_schema)
                obj = parse_json_object(content)
        return obj, content

    async def create_and_validate(
        self,
        messages: List[Dict[str, Any]],
        json_schema: Optional[Dict],
        factory: Callable[[Dict[str, Any]], Any],
    ) -> Tuple[Any, str]:
        """
        Create a JSON response and build a typed value from it.

        ``factory`` raises TypeError/ValueError/KeyError on an unusable object
        (reported as LlmValidationError) or an LlmError subclass of its own,
        which passes through unchanged. Neither is retried.
        """
        obj, raw_text = await self.create_json(messages, json_schema)
        try:
            return factory(obj), raw_text
        except (TypeError, ValueError, KeyError) as e:
            raise LlmValidationError(obj=obj, raw_text=raw_text, validation_error=str(e)) from e
