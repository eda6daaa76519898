"""
Qdrant Vector Store wrapper.

Holds one point per material chunk. Point ids are derived from
``material_id`` and chunk index, so re-writing a material overwrites
rather than duplicates.
"""

import uuid
from dataclasses import dataclass

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchAny,
    MatchValue,
    PointStruct,
    VectorParams,
)

from ..config import RAGSettings, rag_settings
from ..logging_config import logger
from ..models import MaterialRecord
from .parser import TextChunk

SCROLL_PAGE_SIZE = 256


def chunk_point_id(material_id: str, index: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{material_id}:{index}"))


@dataclass
class StoredChunk:
    """A chunk read back with its vector."""

    id: str
    material_id: str
    material_title: str
    course_id: str
    chunk_index: int
    content: str
    vector: list[float]


def get_qdrant_client(settings: RAGSettings | None = None) -> AsyncQdrantClient:
    settings = settings or rag_settings
    if settings.qdrant_location:
        return AsyncQdrantClient(location=settings.qdrant_location)
    return AsyncQdrantClient(host=settings.qdrant_host, port=settings.qdrant_port)


class ChunkStore:
    """Qdrant-backed persistence for material chunks."""

    def __init__(self, client: AsyncQdrantClient | None = None, settings: RAGSettings | None = None):
        self.settings = settings or rag_settings
        self.client = client or get_qdrant_client(self.settings)
        self.collection = self.settings.qdrant_collection

    async def ensure_collection(self) -> None:
        """Create the collection if it doesn't exist or has wrong dimension."""
        target_dim = self.settings.openai_embedding_dimension

        if await self.client.collection_exists(self.collection):
            info = await self.client.get_collection(self.collection)
            current_dim = info.config.params.vectors.size

            if current_dim == target_dim:
                logger.info(f"Collection {self.collection} exists with correct dimension ({current_dim}).")
                return

            logger.warning(
                f"⚠️ Collection dimension mismatch! Found {current_dim}, expected {target_dim}. Recreating..."
            )
            await self.client.delete_collection(self.collection)

        logger.info(f"Creating collection: {self.collection} with dim {target_dim}")
        await self.client.create_collection(
            collection_name=self.collection,
            vectors_config=VectorParams(size=target_dim, distance=Distance.COSINE),
        )

    async def replace_chunks(
        self,
        material: MaterialRecord,
        chunks: list[TextChunk],
        embeddings: list[list[float]],
    ) -> int:
        """
        Write every chunk of a material, dropping whatever was stored before.

        Returns:
            Number of points written.
        """
        if len(chunks) != len(embeddings):
            raise ValueError(f"Got {len(embeddings)} embeddings for {len(chunks)} chunks")

        await self.delete_by_material(material.id)

        points = [
            PointStruct(
                id=chunk_point_id(material.id, chunk.index),
                vector=embedding,
                payload={
                    "material_id": material.id,
                    "material_title": material.title,
                    "course_id": material.course_id,
                    "chunk_index": chunk.index,
                    "content": chunk.content,
                },
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]

        if points:
            await self.client.upsert(collection_name=self.collection, points=points, wait=True)

        logger.info(f"Upserted {len(points)} chunks from '{material.title}'")
        return len(points)

    async def delete_by_material(self, material_id: str) -> None:
        """Delete all vectors of a material."""
        await self.client.delete(
            collection_name=self.collection,
            points_selector=FilterSelector(filter=_material_filter([material_id])),
            wait=True,
        )
        logger.debug(f"Deleted vectors for material {material_id}")

    async def fetch_candidates(self, material_ids: list[str]) -> list[StoredChunk]:
        """All chunks, with vectors, belonging to the given materials."""
        if not material_ids:
            return []

        chunks = []
        offset = None
        while True:
            points, offset = await self.client.scroll(
                collection_name=self.collection,
                scroll_filter=_material_filter(material_ids),
                limit=SCROLL_PAGE_SIZE,
                offset=offset,
                with_payload=True,
                with_vectors=True,
            )
            chunks.extend(_to_chunk(point) for point in points)
            if offset is None:
                break

        return chunks

    async def count(self, material_id: str | None = None) -> int:
        result = await self.client.count(
            collection_name=self.collection,
            count_filter=_material_filter([material_id]) if material_id else None,
            exact=True,
        )
        return result.count

    async def close(self) -> None:
        await self.client.close()


def _material_filter(material_ids: list[str]) -> Filter:
    if len(material_ids) == 1:
        match = MatchValue(value=material_ids[0])
    else:
        match = MatchAny(any=list(material_ids))
    return Filter(must=[FieldCondition(key="material_id", match=match)])


def _to_chunk(point) -> StoredChunk:
    payload = point.payload or {}
    return StoredChunk(
        id=str(point.id),
        material_id=payload["material_id"],
        material_title=payload.get("material_title", ""),
        course_id=payload.get("course_id", ""),
        chunk_index=payload.get("chunk_index", 0),
        content=payload.get("content", ""),
        vector=list(point.vector),
    )
