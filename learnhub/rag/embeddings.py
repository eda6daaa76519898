"""
Embeddings wrapper.

Generates vector embeddings for text chunks through an OpenAI-compatible
API. The SDK's own retries are disabled; every call goes through the
shared retry policy instead.
"""

import asyncio

import openai
from openai import AsyncOpenAI

from ..config import RAGSettings, rag_settings
from ..errors import ExternalServiceError
from ..logging_config import logger
from ..retry import RetryPolicy, Sleep, with_retry
from .llm import default_retry_policy, get_llm_client, translate_openai_error


class EmbeddingClient:
    """Batched text → vector client."""

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

    @property
    def dimension(self) -> int:
        return self.settings.openai_embedding_dimension

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of text strings to embed.

        Returns:
            One vector per text, in input order.
        """
        if not texts:
            return []

        batch_size = max(self.settings.embedding_batch_size, 1)
        total_batches = (len(texts) - 1) // batch_size + 1
        logger.info(f"Generating embeddings for {len(texts)} chunks...")

        all_embeddings = []
        for i in range(0, len(texts), batch_size):
            batch = texts[i : i + batch_size]
            all_embeddings.extend(await self._embed_batch(batch))

            if total_batches > 1:
                logger.info(f"Embedded batch {i // batch_size + 1}/{total_batches}")

        return all_embeddings

    async def embed_query(self, text: str) -> list[float]:
        """Generate the embedding for a single query string."""
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return (await self._embed_batch([text]))[0]

    async def _embed_batch(self, batch: list[str]) -> list[list[float]]:
        async def send():
            try:
                return await self.client.embeddings.create(
                    model=self.settings.openai_embedding_model,
                    input=batch,
                )
            except openai.OpenAIError as e:
                raise translate_openai_error(e) from e

        response = await with_retry(
            send,
            self.retry_policy,
            sleep=self._sleep,
            description=f"Embedding batch of {len(batch)}",
        )

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(batch):
            raise ExternalServiceError(
                f"Embedding provider returned {len(data)} vectors for {len(batch)} inputs"
            )

        vectors = [list(item.embedding) for item in data]
        for vector in vectors:
            if len(vector) != self.dimension:
                raise ExternalServiceError(
                    f"Embedding dimension mismatch: got {len(vector)}, expected {self.dimension}"
                )
        return vectors
