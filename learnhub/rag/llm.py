"""
LLM Client wrapper with configurable base URL.

Supports OpenAI and OpenAI-compatible APIs (Ollama, Azure, etc).
The SDK's own retries are disabled; calls go through the shared retry
policy instead.
"""

import asyncio
import json

import openai
from openai import AsyncOpenAI

from ..config import RAGSettings, rag_settings
from ..errors import ConfigurationError, ExternalServiceError, LearnHubError, RateLimitError, TransientIOError
from ..logging_config import logger
from ..retry import RetryPolicy, Sleep, with_retry

SYSTEM_PROMPT = (
    "You are a helpful teaching assistant for an online course platform. "
    "Answer the student's question using ONLY the provided course materials. "
    "Cite the material titles you used, for example (Source: Week 1 Notes). "
    "If the materials do not contain the answer, say so instead of guessing. "
    "Be clear and concise and explain concepts in a way that helps the student learn."
)

FOLLOW_UP_PROMPT = (
    "Based on the answer below, suggest 3 short follow-up questions a student "
    "might ask next. Reply with a JSON array of strings only."
)


def translate_openai_error(error: openai.OpenAIError, service: str = "Embedding") -> Exception:
    """Map an SDK exception onto the retry taxonomy."""
    if isinstance(error, openai.RateLimitError):
        return RateLimitError(f"{service} provider rate limit exceeded", retry_after=_retry_after(error))
    if isinstance(error, openai.APITimeoutError):
        return TransientIOError(f"{service} request timed out")
    if isinstance(error, openai.APIConnectionError):
        return TransientIOError(f"{service} provider unreachable: {error}")
    if isinstance(error, openai.APIStatusError):
        if error.status_code >= 500:
            return TransientIOError(f"{service} provider error: HTTP {error.status_code}")
        return ExternalServiceError(
            f"{service} provider rejected the request: HTTP {error.status_code}",
            status_code=error.status_code,
            detail=error.message,
        )
    return ExternalServiceError(f"{service} request failed: {error}")


def _retry_after(error: openai.APIStatusError) -> float | None:
    value = error.response.headers.get("retry-after") if error.response is not None else None
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def default_retry_policy(settings: RAGSettings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.retry_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
        jitter=settings.retry_jitter,
    )


def get_llm_client(base_url: str | None = None, settings: RAGSettings | None = None) -> AsyncOpenAI:
    """
    Get an async OpenAI client with optional custom base URL.

    Args:
        base_url: Custom API base URL. If None, uses config or OpenAI default.
                  Examples:
                  - "http://localhost:11434/v1" for Ollama
                  - None for OpenAI (default)

    Returns:
        AsyncOpenAI client with SDK retries disabled.
    """
    settings = settings or rag_settings
    url = base_url or settings.openai_base_url
    api_key = settings.openai_api_key or ("ollama" if url else None)

    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY is required when using OpenAI API")

    client_kwargs = {
        "api_key": api_key,
        "timeout": settings.openai_timeout,
        "max_retries": 0,
    }

    if url:
        client_kwargs["base_url"] = url

    return AsyncOpenAI(**client_kwargs)


class AnswerGenerator:
    """Chat-completion calls used by the retrieval engine."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        settings: RAGSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or rag_settings
        self._client = client
        self.retry_policy = retry_policy or default_retry_policy(self.settings)
        self._sleep = sleep

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = get_llm_client(settings=self.settings)
        return self._client

    async def _complete(self, messages: list[dict], temperature: float, max_tokens: int, description: str) -> str:
        async def send():
            try:
                return await self.client.chat.completions.create(
                    model=self.settings.openai_chat_model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except openai.OpenAIError as e:
                raise translate_openai_error(e, service="Chat") from e

        response = await with_retry(send, self.retry_policy, sleep=self._sleep, description=description)
        return (response.choices[0].message.content or "").strip()

    async def answer(self, question: str, context: str) -> str:
        return await self._complete(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": f"Course materials:\n{context}\n\nQuestion: {question}",
                },
            ],
            temperature=self.settings.answer_temperature,
            max_tokens=self.settings.answer_max_tokens,
            description="Answer generation",
        )

    async def follow_ups(self, question: str, answer: str) -> list[str]:
        """Up to three follow-up questions, or an empty list if the model's reply is unusable."""
        try:
            content = await self._complete(
                [
                    {"role": "system", "content": FOLLOW_UP_PROMPT},
                    {"role": "user", "content": f"Question: {question}\n\nAnswer: {answer}"},
                ],
                temperature=0.7,
                max_tokens=200,
                description="Follow-up suggestions",
            )
            suggestions = json.loads(content or "[]")
        except (LearnHubError, json.JSONDecodeError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not generate follow-up suggestions: {e}")
            return []

        if not isinstance(suggestions, list):
            return []
        return [str(s).strip() for s in suggestions if str(s).strip()][:3]
