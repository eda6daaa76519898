"""
Material service: the entry points external callers use.

Submission runs the upload saga and enqueues the new material. Reads go
through the cache; every mutation invalidates it.
"""

from .cache import CacheInvalidation, CacheKeys, CacheService, CacheTTL
from .config import StorageSettings, storage_settings
from .errors import ValidationError
from .logging_config import logger
from .models import Material, MaterialStatus
from .queue import ProcessingQueue
from .rag.store import ChunkStore
from .repository import MaterialRepository
from .storage import BlobFile, ObjectStoreClient, StoredBlob
from .upload import OutcomeKind, UploadOutcome, UploadSaga

STATUS_FIELDS = (
    "id",
    "status",
    "chunks_count",
    "processing_error",
    "processing_started_at",
    "processing_completed_at",
)


class MaterialService:
    def __init__(
        self,
        repository: MaterialRepository,
        queue: ProcessingQueue,
        saga: UploadSaga,
        object_store: ObjectStoreClient,
        chunk_store: ChunkStore,
        cache: CacheService,
        settings: StorageSettings | None = None,
    ):
        self.repository = repository
        self.queue = queue
        self.saga = saga
        self.object_store = object_store
        self.chunk_store = chunk_store
        self.cache = cache
        self.invalidation = CacheInvalidation(cache)
        self.settings = settings or storage_settings

    async def submit(
        self,
        file: BlobFile,
        title: str,
        course_id: str,
        upload_preset: str | None = None,
    ) -> UploadOutcome[dict]:
        """
        Store a document, create its material and queue it for processing.

        The outcome's ``record`` is the material as a dict. A failed enqueue
        does not undo the upload: the material stays ``pending`` and can be
        queued again with ``retry``.
        """
        title = (title or "").strip()
        course_id = (course_id or "").strip()
        if not title or not course_id:
            return UploadOutcome(
                kind=OutcomeKind.VALIDATION_ERROR,
                error=ValidationError("Title and course id are required"),
            )

        async def create_record(blob: StoredBlob) -> Material:
            return await self.repository.create(
                title=title,
                course_id=course_id,
                file_url=blob.url,
                public_id=blob.public_id,
                resource_type=blob.resource_type,
            )

        outcome = await self.saga.upload(
            file,
            upload_preset or self.settings.cloudinary_upload_preset,
            create_record,
            tags=[f"course:{course_id}"],
        )
        if not outcome.ok:
            return outcome

        material = outcome.record
        self.invalidation.material(material.id)
        self.invalidation.course(course_id)

        try:
            await self.queue.enqueue(material.id)
        except Exception as e:
            logger.error(f"Material {material.id} stored but could not be queued: {e}")
            outcome.details["queued"] = False
        else:
            outcome.details["queued"] = True

        outcome.record = material.to_dict()
        return outcome

    async def get(self, material_id: str) -> dict:
        async def fetch() -> dict:
            material = await self.repository.require(material_id)
            return material.to_dict()

        return await self.cache.get_or_set(CacheKeys.material(material_id), CacheTTL.MATERIAL, fetch)

    async def status(self, material_id: str) -> dict:
        """Processing status plus queue position details, cached briefly."""

        async def fetch() -> dict:
            material = (await self.repository.require(material_id)).to_dict()
            return {
                **{key: material[key] for key in STATUS_FIELDS},
                "queue": await self.queue.get_by_material(material_id),
            }

        return await self.cache.get_or_set(
            CacheKeys.material_status(material_id), CacheTTL.MATERIAL_STATUS, fetch
        )

    async def list_materials(
        self,
        course_id: str | None = None,
        status: MaterialStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict]:
        filters = {
            "course_id": course_id,
            "status": status.value if status else None,
            "limit": limit,
            "offset": offset,
        }

        async def fetch() -> list[dict]:
            materials = await self.repository.list_materials(course_id, status, limit, offset)
            return [m.to_dict() for m in materials]

        return await self.cache.get_or_set(CacheKeys.material_list(filters), CacheTTL.MATERIAL_LIST, fetch)

    async def retry(self, material_id: str) -> str:
        """
        Admin retry: clear stale chunks and queue the material again.

        Failed materials qualify, as do pending ones whose enqueue was lost.

        Returns:
            The queue entry id.
        """
        material = await self.repository.require(material_id)
        unqueued = (
            material.status is MaterialStatus.PENDING
            and await self.queue.get_by_material(material_id) is None
        )
        if material.status is not MaterialStatus.FAILED and not unqueued:
            raise ValidationError(
                f"Only failed materials can be retried (material is {material.status.value})"
            )

        await self.chunk_store.delete_by_material(material_id)
        await self.repository.reset_chunks(material_id)
        entry_id = await self.queue.requeue(material_id)
        logger.info(f"🔁 Material {material_id} re-queued by admin")
        return entry_id

    async def delete(self, material_id: str) -> dict:
        """
        Delete a material with its chunks and stored blob.

        Chunk and blob cleanup failures are logged and reported, not raised.
        """
        material = await self.repository.require(material_id)
        if material.status is MaterialStatus.PROCESSING:
            raise ValidationError(f"Material {material_id} is being processed")

        await self.repository.delete(material_id)
        self.invalidation.material(material_id)
        self.invalidation.course(material.course_id)

        result = {"id": material_id, "chunks_deleted": True, "blob_deleted": False}

        try:
            await self.chunk_store.delete_by_material(material_id)
        except Exception as e:
            logger.error(f"Could not delete chunks of material {material_id}: {e}")
            result["chunks_deleted"] = False

        try:
            if material.public_id:
                result["blob_deleted"] = await self.object_store.delete(material.public_id, material.resource_type)
            else:
                result["blob_deleted"] = await self.object_store.delete_by_url(material.file_url)
        except Exception as e:
            logger.error(f"[Cleanup] Could not delete blob of material {material_id}: {e}")

        logger.info(f"🗑️ Deleted material {material_id} ('{material.title}')")
        return result