"""
Composition root: builds every service once and wires them together.
"""

from dataclasses import dataclass

from .cache import CacheInvalidation, CacheService
from .config import WorkerSettings, worker_settings
from .database import Database
from .logging_config import logger
from .materials import MaterialService
from .queue import ProcessingQueue
from .rag.embeddings import EmbeddingClient
from .rag.engine import RetrievalEngine
from .rag.ingest import IngestionService
from .rag.llm import AnswerGenerator
from .rag.parser import DocumentPipeline
from .rag.store import ChunkStore
from .repository import MaterialRepository
from .storage import ObjectStoreClient
from .upload import UploadSaga
from .worker import QueueWorker


@dataclass
class Container:
    db: Database
    cache: CacheService
    object_store: ObjectStoreClient
    chunk_store: ChunkStore
    repository: MaterialRepository
    queue: ProcessingQueue
    pipeline: DocumentPipeline
    embedder: EmbeddingClient
    ingestion: IngestionService
    engine: RetrievalEngine
    materials: MaterialService
    worker: QueueWorker

    @classmethod
    def build(
        cls,
        db: Database | None = None,
        object_store: ObjectStoreClient | None = None,
        chunk_store: ChunkStore | None = None,
        pipeline: DocumentPipeline | None = None,
        embedder: EmbeddingClient | None = None,
        generator: AnswerGenerator | None = None,
        settings: WorkerSettings | None = None,
    ) -> "Container":
        """Wire the application. Any collaborator can be swapped, e.g. in tests."""
        settings = settings or worker_settings
        db = db or Database()
        cache = CacheService()
        object_store = object_store or ObjectStoreClient()
        chunk_store = chunk_store or ChunkStore()
        pipeline = pipeline or DocumentPipeline()
        embedder = embedder or EmbeddingClient()

        repository = MaterialRepository(db)
        queue = ProcessingQueue(db, CacheInvalidation(cache), settings=settings)
        ingestion = IngestionService(pipeline, embedder, chunk_store)
        engine = RetrievalEngine(embedder, chunk_store, repository, generator or AnswerGenerator(), cache=cache)
        materials = MaterialService(
            repository=repository,
            queue=queue,
            saga=UploadSaga(object_store),
            object_store=object_store,
            chunk_store=chunk_store,
            cache=cache,
        )
        worker = QueueWorker(queue, ingestion, settings=settings)

        return cls(
            db=db,
            cache=cache,
            object_store=object_store,
            chunk_store=chunk_store,
            repository=repository,
            queue=queue,
            pipeline=pipeline,
            embedder=embedder,
            ingestion=ingestion,
            engine=engine,
            materials=materials,
            worker=worker,
        )

    async def startup(self) -> None:
        await self.db.init()
        await self.chunk_store.ensure_collection()

    async def shutdown(self) -> None:
        await self.worker.stop()
        await self.pipeline.close()
        await self.object_store.close()
        await self.chunk_store.close()
        await self.db.dispose()
        self.cache.clear()
        logger.info("Services shut down")
