"""Semantic oracle client.

The oracle is an external natural-language understanding service. The
pipeline only needs ``analyze(prompt) -> text``; ``OpenAIOracle`` provides
that over any OpenAI-compatible chat endpoint, with retry and a hard
timeout. Every failure surfaces as ``OracleUnavailable``.
"""

from __future__ import annotations

import os
from typing import Protocol, runtime_checkable

from loguru import logger
from openai import APIConnectionError, APIError, APITimeoutError, AsyncOpenAI, RateLimitError

from reasonflow.config import OracleConfig
from reasonflow.utils.errors import OracleUnavailable
from reasonflow.utils.retry import retry_with_backoff, with_timeout

SYSTEM_PROMPT = (
    "You analyze developer requests for an assistant. "
    "Reply with a single JSON object and nothing else."
)

_RETRYABLE = (APIConnectionError, APITimeoutError, RateLimitError)


@runtime_checkable
class SemanticOracle(Protocol):
    """Anything that can turn an analysis prompt into text."""

    async def analyze(self, prompt: str) -> str: ...


class OpenAIOracle:
    """Oracle backed by an OpenAI-compatible chat completion endpoint.

    Example:
        oracle = OpenAIOracle(OracleConfig())
        reply = await oracle.analyze("Classify: fix failing CI job")

    """

    def __init__(
        self,
        config: OracleConfig | None = None,
        api_key: str | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        """Initialize oracle client.

        Args:
            config: Model, endpoint and timeout settings.
            api_key: API key. If None, reads OPENAI_API_KEY.
            client: Pre-built async client (mainly for tests).

        Raises:
            OracleUnavailable: If no client is given and no API key is available.

        """
        self.config = config or OracleConfig()
        if client is None:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise OracleUnavailable("OPENAI_API_KEY environment variable not set")
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.config.base_url or None,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )
        self._client = client
        retrying = retry_with_backoff(
            max_attempts=max(1, self.config.max_retries + 1),
            base_delay=0.25,
            max_delay=2.0,
            retry_on=_RETRYABLE,
        )(self._complete_once)
        self._complete = with_timeout(self.config.timeout_seconds)(retrying)
        logger.info(f"Semantic oracle initialized with model: {self.config.model}")

    async def _complete_once(self, prompt: str) -> str:
        response = await self._client.chat.completions.create(
            model=self.config.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.0,
            max_tokens=400,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content
        if not content:
            raise OracleUnavailable("Oracle returned an empty reply")
        return content

    async def analyze(self, prompt: str) -> str:
        """Send ``prompt`` to the oracle.

        Raises:
            OracleUnavailable: On timeout, transport or API errors.

        """
        try:
            return await self._complete(prompt)
        except TimeoutError as e:
            raise OracleUnavailable(
                f"Oracle timed out after {self.config.timeout_seconds}s"
            ) from e
        except APIError as e:
            raise OracleUnavailable(f"Oracle API error: {e}") from e
