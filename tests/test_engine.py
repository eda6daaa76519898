"""Tests for the retrieval and answer engine."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from learnhub.errors import ValidationError
from learnhub.models import MaterialRecord
from learnhub.rag.engine import (
    ERROR_ANSWER,
    OUT_OF_SCOPE_SUGGESTIONS,
    RetrievalEngine,
    ScoredChunk,
    build_context,
    cosine_similarity,
)
from learnhub.rag.llm import AnswerGenerator
from learnhub.rag.parser import TextChunk
from learnhub.rag.store import StoredChunk
from learnhub.retry import RetryPolicy


@pytest.fixture
def generator():
    generator = MagicMock()
    generator.answer = AsyncMock(return_value="Mitochondria produce ATP (Source: Biology Notes).")
    generator.follow_ups = AsyncMock(return_value=[])
    return generator


@pytest.fixture
def engine(fake_embedder, chunk_store, repository, generator, cache, rag_config):
    return RetrievalEngine(fake_embedder, chunk_store, repository, generator, cache=cache, settings=rag_config)


@pytest.fixture
def completed_material(material_factory, queue, chunk_store):
    """Create a completed material with stored chunks."""

    async def create(title="Biology Notes", course_id="course-1", vectors=None, contents=None):
        material = await material_factory(title=title, course_id=course_id)
        await queue.enqueue(material.id)
        job = await queue.claim_next()

        contents = contents or ["Mitochondria are the powerhouse of the cell.", "Ribosomes build proteins."]
        vectors = vectors or [[1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0]]
        chunks = [TextChunk(index=i, content=c) for i, c in enumerate(contents)]
        await chunk_store.replace_chunks(job.material, chunks, vectors)
        await queue.complete(job.entry_id, len(chunks))
        return material

    return create


class TestCosineSimilarity:
    """Tests for cosine_similarity."""

    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_symmetric(self):
        a, b = [1.0, 2.0, 0.5], [0.3, -1.0, 2.0]
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


class TestBuildContext:
    """Tests for context assembly."""

    def test_drops_lowest_ranked_when_too_long(self):
        """Should keep the best chunks that fit the budget."""
        ranked = [
            ScoredChunk(StoredChunk(str(i), "m", "Notes", "c", i, "x" * 50, []), 1.0 - i / 10)
            for i in range(3)
        ]

        context, used = build_context(ranked, max_length=150)

        assert [item.chunk.chunk_index for item in used] == [0, 1]
        assert context.startswith("[From: Notes]\n")


class TestQuery:
    """Tests for RetrievalEngine.query."""

    @pytest.mark.asyncio
    async def test_nothing_uploaded_is_out_of_scope(self, engine, generator):
        """Should report out of scope with zero confidence."""
        result = await engine.query("What is a mitochondrion?")

        assert result.is_out_of_scope
        assert result.confidence == 0.0
        assert result.sources == []
        assert result.follow_up_suggestions == OUT_OF_SCOPE_SUGGESTIONS
        generator.answer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_below_threshold_is_out_of_scope(self, engine, fake_embedder, completed_material):
        """Should not answer from weak matches."""
        await completed_material()
        fake_embedder.query_vector = [0.0, 0.0, 1.0, 0.0]

        result = await engine.query("Who won the 1998 World Cup?")

        assert result.is_out_of_scope
        assert result.sources == []

    @pytest.mark.asyncio
    async def test_answers_with_sources(self, engine, generator, completed_material):
        """Should answer from the best chunk and cite it."""
        material = await completed_material()

        result = await engine.query("What do mitochondria do?")

        assert not result.is_out_of_scope
        assert result.answer.startswith("Mitochondria produce ATP")
        assert result.confidence == pytest.approx(1.0)
        assert len(result.sources) == 1
        source = result.sources[0]
        assert source.material_id == material.id
        assert source.material_title == "Biology Notes"
        assert source.chunk_index == 0
        assert "powerhouse" in source.preview

        context = generator.answer.await_args.args[1]
        assert "[From: Biology Notes]" in context
        assert "Ribosomes" not in context

    @pytest.mark.asyncio
    async def test_scope_to_course(self, engine, completed_material):
        """Should only consider materials of the requested course."""
        await completed_material(course_id="course-2")

        result = await engine.query("What do mitochondria do?", scope_id="course-1")

        assert result.is_out_of_scope

    @pytest.mark.asyncio
    async def test_scope_to_material(self, engine, completed_material):
        """Should accept a material id as scope."""
        material = await completed_material()

        result = await engine.query("What do mitochondria do?", scope_id=material.id)

        assert not result.is_out_of_scope

    @pytest.mark.asyncio
    async def test_ignores_unfinished_materials(self, engine, material_factory, chunk_store):
        """Should not search chunks of materials that are not completed."""
        material = await material_factory()
        record = MaterialRecord.from_row(material)
        await chunk_store.replace_chunks(record, [TextChunk(0, "Stray chunk")], [[1.0, 0.0, 0.0, 0.0]])

        result = await engine.query("Anything?")

        assert result.is_out_of_scope

    @pytest.mark.asyncio
    async def test_generation_failure_returns_apology(self, engine, generator, completed_material):
        """Should hide internal errors behind a generic answer."""
        await completed_material()
        generator.answer.side_effect = RuntimeError("model unavailable")

        result = await engine.query("What do mitochondria do?")

        assert result.answer == ERROR_ANSWER
        assert result.sources == []
        assert result.confidence == 0.0
        assert not result.is_out_of_scope

    @pytest.mark.asyncio
    async def test_blank_question(self, engine):
        """Should reject empty questions."""
        with pytest.raises(ValidationError):
            await engine.query("   ")

    @pytest.mark.asyncio
    async def test_fallback_follow_ups(self, engine, completed_material):
        """Should suggest follow-ups mentioning the source material."""
        await completed_material()

        result = await engine.query("What do mitochondria do?")

        assert "Tell me more about this topic from Biology Notes" in result.follow_up_suggestions

    @pytest.mark.asyncio
    async def test_rate_limited_generation_still_answers(
        self, fake_embedder, chunk_store, repository, cache, rag_config, completed_material
    ):
        """Should retry a rate-limited completion instead of apologising."""
        await completed_material()
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        chat_client = MagicMock()
        chat_client.chat.completions.create = AsyncMock(side_effect=[
            openai.RateLimitError(
                "slow down",
                response=httpx.Response(429, headers={"retry-after": "1"}, request=request),
                body=None,
            ),
            SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="Mitochondria make ATP."))]),
        ])
        generator = AnswerGenerator(
            client=chat_client,
            settings=rag_config,
            retry_policy=RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=5.0, jitter=0.0),
            sleep=AsyncMock(),
        )
        engine = RetrievalEngine(fake_embedder, chunk_store, repository, generator, cache=cache, settings=rag_config)

        result = await engine.query("What do mitochondria do?")

        assert result.answer == "Mitochondria make ATP."
        assert result.answer != ERROR_ANSWER
        assert chat_client.chat.completions.create.await_count == 2


class TestStats:
    """Tests for engine statistics."""

    @pytest.mark.asyncio
    async def test_stats(self, engine, completed_material, material_factory):
        """Should count materials and chunks."""
        await completed_material()
        await material_factory(title="Pending Notes")

        stats = await engine.stats()

        assert stats == {
            "total_materials": 2,
            "completed_materials": 1,
            "total_chunks": 2,
            "average_chunks_per_material": 2.0,
        }

    @pytest.mark.asyncio
    async def test_query_suggestions(self, engine, material_factory):
        """Should build starter questions from material titles."""
        await material_factory(title="Cell Biology")

        assert await engine.query_suggestions("course-1") == ["Tell me about cell biology"]
