"""
Ingestion of a single material: extract → embed → persist chunks.
"""

from ..logging_config import logger
from ..models import MaterialRecord
from .embeddings import EmbeddingClient
from .parser import DocumentPipeline
from .store import ChunkStore


class IngestionService:
    """Turns one material into stored chunk vectors."""

    def __init__(self, pipeline: DocumentPipeline, embedder: EmbeddingClient, store: ChunkStore):
        self.pipeline = pipeline
        self.embedder = embedder
        self.store = store

    async def ingest(self, material: MaterialRecord) -> int:
        """
        Process a material end to end.

        On any failure the material's partially written chunks are removed
        before the error propagates.

        Returns:
            Number of chunks stored.
        """
        try:
            chunks = await self.pipeline.process(material)
            embeddings = await self.embedder.embed([chunk.content for chunk in chunks])
            count = await self.store.replace_chunks(material, chunks, embeddings)
        except BaseException:
            # includes cancellation by a stopping worker
            await self.discard(material.id)
            raise

        logger.info(f"✅ Indexed '{material.title}': {count} chunks")
        return count

    async def discard(self, material_id: str) -> None:
        """Remove stored chunks of a material. Failures are logged only."""
        try:
            await self.store.delete_by_material(material_id)
        except Exception as e:
            logger.error(f"Could not remove chunks of material {material_id}: {e}")
