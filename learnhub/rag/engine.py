"""
Retrieval and answer engine.

Embeds a question, scores it against the stored chunks of completed
materials and either answers from the best matches or reports the
question as out of scope.
"""

from dataclasses import asdict, dataclass, field

import numpy as np

from ..cache import CacheKeys, CacheService, CacheTTL
from ..config import RAGSettings, rag_settings
from ..errors import ValidationError
from ..logging_config import logger
from ..repository import MaterialRepository
from .embeddings import EmbeddingClient
from .llm import AnswerGenerator
from .store import ChunkStore, StoredChunk

PREVIEW_LENGTH = 200

ERROR_ANSWER = "I'm sorry, I encountered an error while processing your question. Please try again."
EMPTY_ANSWER = "I'm sorry, I couldn't generate a response. Please try rephrasing your question."

OUT_OF_SCOPE_SCOPED = (
    "I couldn't find information about that topic in your selected course materials. "
    "This question might not be covered in the uploaded materials, "
    "or you might want to try rephrasing your question."
)
OUT_OF_SCOPE_GLOBAL = (
    "I couldn't find relevant information in the available course materials. "
    "Please make sure you've selected the correct course, or try asking about a different topic."
)
OUT_OF_SCOPE_SUGGESTIONS = [
    "Would you like me to search my general knowledge instead?",
    "Try asking about a different topic from this course",
    "Check if you've selected the correct course",
]
DEFAULT_QUERY_SUGGESTIONS = [
    "What topics are covered in this course?",
    "Can you explain the key concepts?",
    "Help me understand the main ideas",
]


def cosine_similarity(a, b) -> float:
    """
    ``a·b / (|a||b|)``. Zero-norm vectors score 0.

    Raises:
        ValueError: if the vectors differ in dimension.
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimensions differ: {va.shape} vs {vb.shape}")

    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


@dataclass
class ScoredChunk:
    chunk: StoredChunk
    similarity: float


@dataclass
class Source:
    """A cited chunk."""

    chunk_id: str
    material_id: str
    material_title: str
    chunk_index: int
    similarity: float
    preview: str


@dataclass
class QueryResult:
    answer: str
    sources: list[Source] = field(default_factory=list)
    confidence: float = 0.0
    is_out_of_scope: bool = False
    follow_up_suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def rank_chunks(query_vector: list[float], candidates: list[StoredChunk], limit: int) -> list[ScoredChunk]:
    """Score every candidate and keep the ``limit`` best, highest first."""
    scored = [ScoredChunk(chunk=c, similarity=cosine_similarity(query_vector, c.vector)) for c in candidates]
    scored.sort(key=lambda s: s.similarity, reverse=True)
    return scored[:limit]


def build_context(ranked: list[ScoredChunk], max_length: int) -> tuple[str, list[ScoredChunk]]:
    """
    Concatenate chunks as ``[From: <title>]`` blocks, best first, stopping
    before the context would exceed ``max_length``.
    """
    blocks = []
    used = []
    length = 0
    for item in ranked:
        block = f"[From: {item.chunk.material_title}]\n{item.chunk.content}\n\n"
        if length + len(block) > max_length:
            break
        blocks.append(block)
        used.append(item)
        length += len(block)
    return "".join(blocks), used


def _preview(content: str) -> str:
    if len(content) <= PREVIEW_LENGTH:
        return content
    return content[:PREVIEW_LENGTH] + "..."


class RetrievalEngine:
    """Similarity search over completed materials plus grounded answer generation."""

    def __init__(
        self,
        embedder: EmbeddingClient,
        store: ChunkStore,
        materials: MaterialRepository,
        generator: AnswerGenerator,
        cache: CacheService | None = None,
        settings: RAGSettings | None = None,
    ):
        self.embedder = embedder
        self.store = store
        self.materials = materials
        self.generator = generator
        self.cache = cache
        self.settings = settings or rag_settings

    async def find_relevant(
        self,
        query_vector: list[float],
        scope_id: str | None = None,
        max_results: int | None = None,
    ) -> list[ScoredChunk]:
        material_ids = await self.materials.completed_ids(scope_id)
        candidates = await self.store.fetch_candidates(material_ids)
        return rank_chunks(query_vector, candidates, max_results or self.settings.max_results)

    async def query(
        self,
        text: str,
        scope_id: str | None = None,
        max_results: int | None = None,
        threshold: float | None = None,
    ) -> QueryResult:
        """
        Answer a question from stored course materials.

        Weak or missing matches produce an out-of-scope result and internal
        failures a generic apology; neither raises.

        Raises:
            ValidationError: if the question is blank.
        """
        if not text or not text.strip():
            raise ValidationError("Question must not be empty")

        threshold = self.settings.similarity_threshold if threshold is None else threshold

        try:
            query_vector = await self.embedder.embed_query(text)
            ranked = await self.find_relevant(query_vector, scope_id, max_results)

            if not ranked or ranked[0].similarity < threshold:
                best = f"{ranked[0].similarity:.3f}" if ranked else "none"
                logger.info(f"🔍 Out of scope (best similarity {best}): {text[:80]}")
                return self._out_of_scope(scope_id)

            relevant = [item for item in ranked if item.similarity >= threshold]
            context, used = build_context(relevant, self.settings.max_context_length)
            if not used:
                # the single best chunk alone overflows the context budget
                used = relevant[:1]
                context = f"[From: {used[0].chunk.material_title}]\n"
                context += used[0].chunk.content[: self.settings.max_context_length]

            answer = await self.generator.answer(text, context) or EMPTY_ANSWER
            suggestions = await self._follow_ups(text, answer, used)

            logger.info(
                f"💬 Answered from {len(used)} chunks (confidence {ranked[0].similarity:.3f}): {text[:80]}"
            )
            return QueryResult(
                answer=answer,
                sources=[
                    Source(
                        chunk_id=item.chunk.id,
                        material_id=item.chunk.material_id,
                        material_title=item.chunk.material_title,
                        chunk_index=item.chunk.chunk_index,
                        similarity=item.similarity,
                        preview=_preview(item.chunk.content),
                    )
                    for item in used
                ],
                confidence=ranked[0].similarity,
                is_out_of_scope=False,
                follow_up_suggestions=suggestions,
            )
        except Exception as e:
            logger.exception(f"RAG query failed: {e}")
            return QueryResult(answer=ERROR_ANSWER)

    def _out_of_scope(self, scope_id: str | None) -> QueryResult:
        return QueryResult(
            answer=OUT_OF_SCOPE_SCOPED if scope_id else OUT_OF_SCOPE_GLOBAL,
            sources=[],
            confidence=0.0,
            is_out_of_scope=True,
            follow_up_suggestions=list(OUT_OF_SCOPE_SUGGESTIONS),
        )

    async def _follow_ups(self, question: str, answer: str, used: list[ScoredChunk]) -> list[str]:
        if self.settings.follow_up_suggestions:
            suggestions = await self.generator.follow_ups(question, answer)
            if suggestions:
                return suggestions

        title = used[0].chunk.material_title
        return [
            f"Tell me more about this topic from {title}",
            "Can you explain this concept in simpler terms?",
            "Are there any examples related to this topic?",
        ]

    async def stats(self, course_id: str | None = None) -> dict:
        """Material and chunk totals, cached for a few minutes."""

        async def compute() -> dict:
            counts = await self.materials.counts(course_id)
            completed = counts["completed_materials"]
            counts["average_chunks_per_material"] = (
                round(counts["total_chunks"] / completed, 2) if completed else 0
            )
            return counts

        if self.cache is None:
            return await compute()
        return await self.cache.get_or_set(CacheKeys.rag_stats(course_id), CacheTTL.RAG_STATS, compute)

    async def query_suggestions(self, course_id: str | None = None) -> list[str]:
        """Starter questions built from material titles."""
        try:
            materials = await self.materials.list_materials(course_id=course_id, limit=10)
        except Exception as e:
            logger.error(f"Failed to get query suggestions: {e}")
            return list(DEFAULT_QUERY_SUGGESTIONS)

        if not materials:
            return list(DEFAULT_QUERY_SUGGESTIONS)
        return [f"Tell me about {m.title.lower()}" for m in materials]
