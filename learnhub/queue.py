"""
Durable, at-least-once processing queue backed by the ``processing_queue`` table.

One live entry per material (UNIQUE ``material_id``). Claims are an atomic
compare-and-set on ``available_at``; a claim pushes ``available_at`` forward
by the lease so an abandoned job becomes claimable again once it expires.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .cache import CacheInvalidation
from .config import WorkerSettings, worker_settings
from .database import Database
from .errors import DatabaseError, NotFoundError, ValidationError
from .logging_config import logger
from .models import Material, MaterialRecord, MaterialStatus, ProcessingQueueEntry, utcnow

MAX_CLAIM_RACES = 5
MAX_ERROR_LENGTH = 2000


class FailureOutcome(str, enum.Enum):
    RETRY = "retry"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class QueueJob:
    """A claimed queue entry together with the material it refers to."""

    entry_id: str
    material: MaterialRecord
    attempts: int
    enqueued_at: datetime


class ProcessingQueue:
    """Queue operations: enqueue, claim_next, complete, fail."""

    def __init__(
        self,
        db: Database,
        invalidation: CacheInvalidation | None = None,
        settings: WorkerSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or worker_settings
        self.db = db
        self.invalidation = invalidation
        self.max_attempts = settings.max_attempts
        self.retry_base_delay = settings.retry_base_delay
        self.retry_max_delay = settings.retry_max_delay
        self.claim_lease = settings.claim_lease
        self._clock = clock

    def retry_delay(self, attempts: int) -> float:
        """Seconds an entry stays hidden after its ``attempts``-th failure."""
        return min(self.retry_base_delay * 2 ** max(attempts - 1, 0), self.retry_max_delay)

    async def enqueue(self, material_id: str) -> str:
        """
        Add a material to the queue. Idempotent: returns the live entry id
        if one already exists.
        """
        now = self._clock()
        try:
            async with self.db.session() as session:
                existing = await session.scalar(
                    select(ProcessingQueueEntry).where(ProcessingQueueEntry.material_id == material_id)
                )
                if existing is not None:
                    logger.debug(f"Job already exists for material {material_id}")
                    return existing.id

                material = await session.get(Material, material_id)
                if material is None:
                    raise NotFoundError(f"Material {material_id} not found")

                entry = ProcessingQueueEntry(material_id=material_id, enqueued_at=now, available_at=now)
                session.add(entry)
                material.status = MaterialStatus.PENDING
                material.processing_error = None

                try:
                    await session.commit()
                except IntegrityError:
                    # lost the race against a concurrent enqueue
                    await session.rollback()
                    existing = await session.scalar(
                        select(ProcessingQueueEntry).where(ProcessingQueueEntry.material_id == material_id)
                    )
                    if existing is None:
                        raise
                    return existing.id
        except SQLAlchemyError as e:
            raise DatabaseError(f"Could not enqueue material {material_id}", detail=str(e)) from e

        self._invalidate(material_id)
        logger.info(f"📥 Queued material {material_id} (job {entry.id})")
        return entry.id

    async def requeue(self, material_id: str) -> str:
        """Admin retry of a failed material. Chunk cleanup is the caller's job."""
        async with self.db.session() as session:
            material = await session.get(Material, material_id)
        if material is None:
            raise NotFoundError(f"Material {material_id} not found")
        if material.status is MaterialStatus.PROCESSING:
            raise ValidationError(f"Material {material_id} is being processed")
        return await self.enqueue(material_id)

    async def claim_next(self) -> QueueJob | None:
        """Claim the oldest visible entry, or return None if nothing is claimable."""
        now = self._clock()
        lease_until = now + timedelta(seconds=self.claim_lease)

        try:
            async with self.db.session() as session:
                for _ in range(MAX_CLAIM_RACES):
                    candidate = (
                        await session.execute(
                            select(ProcessingQueueEntry.id, ProcessingQueueEntry.available_at)
                            .where(ProcessingQueueEntry.available_at <= now)
                            .order_by(ProcessingQueueEntry.enqueued_at, ProcessingQueueEntry.id)
                            .limit(1)
                        )
                    ).first()
                    if candidate is None:
                        return None

                    result = await session.execute(
                        update(ProcessingQueueEntry)
                        .where(
                            ProcessingQueueEntry.id == candidate.id,
                            ProcessingQueueEntry.available_at == candidate.available_at,
                        )
                        .values(claimed_at=now, available_at=lease_until)
                        .execution_options(synchronize_session=False)
                    )
                    await session.commit()

                    if result.rowcount != 1:
                        logger.debug(f"Job {candidate.id} was claimed elsewhere, trying next")
                        continue

                    entry = await session.get(ProcessingQueueEntry, candidate.id, populate_existing=True)
                    material = await session.get(Material, entry.material_id)
                    return QueueJob(
                        entry_id=entry.id,
                        material=MaterialRecord.from_row(material),
                        attempts=entry.attempts,
                        enqueued_at=entry.enqueued_at,
                    )
        except SQLAlchemyError as e:
            raise DatabaseError("Could not claim the next job", detail=str(e)) from e

        return None

    async def mark_processing(self, material_id: str) -> None:
        try:
            async with self.db.session() as session:
                material = await session.get(Material, material_id)
                if material is None:
                    raise NotFoundError(f"Material {material_id} not found")
                material.status = MaterialStatus.PROCESSING
                material.processing_started_at = self._clock()
                material.processing_completed_at = None
                await session.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Could not update material {material_id}", detail=str(e)) from e

        self._invalidate(material_id)

    async def complete(self, entry_id: str, chunks_count: int) -> None:
        """Remove the entry and mark its material completed, in one transaction."""
        try:
            async with self.db.session() as session:
                entry = await session.get(ProcessingQueueEntry, entry_id)
                if entry is None:
                    raise NotFoundError(f"Job {entry_id} not found")

                material = await session.get(Material, entry.material_id)
                material.status = MaterialStatus.COMPLETED
                material.chunks_count = chunks_count
                material.processing_error = None
                material.processing_completed_at = self._clock()
                material_id = material.id

                await session.delete(entry)
                await session.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Could not complete job {entry_id}", detail=str(e)) from e

        self._invalidate(material_id)
        logger.info(f"✅ Job {entry_id} completed: material {material_id} has {chunks_count} chunks")

    async def fail(self, entry_id: str, error: BaseException | str, terminal: bool = False) -> FailureOutcome:
        """
        Record a failed attempt.

        The entry is removed and the material marked ``failed`` once attempts
        reach the ceiling or the error is terminal. Otherwise the entry becomes
        claimable again after the retry delay.
        """
        message = (str(error) or type(error).__name__)[:MAX_ERROR_LENGTH]
        now = self._clock()

        try:
            async with self.db.session() as session:
                entry = await session.get(ProcessingQueueEntry, entry_id)
                if entry is None:
                    raise NotFoundError(f"Job {entry_id} not found")

                material = await session.get(Material, entry.material_id)
                material_id = material.id
                entry.attempts += 1
                entry.last_error = message
                material.processing_error = message

                if terminal or entry.attempts >= self.max_attempts:
                    material.status = MaterialStatus.FAILED
                    material.processing_completed_at = now
                    attempts = entry.attempts
                    await session.delete(entry)
                    outcome = FailureOutcome.EXHAUSTED
                else:
                    delay = self.retry_delay(entry.attempts)
                    entry.claimed_at = None
                    entry.available_at = now + timedelta(seconds=delay)
                    material.status = MaterialStatus.PENDING
                    attempts = entry.attempts
                    outcome = FailureOutcome.RETRY

                await session.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"Could not record failure of job {entry_id}", detail=str(e)) from e

        self._invalidate(material_id)

        if outcome is FailureOutcome.EXHAUSTED:
            reason = "terminal error" if terminal else f"{attempts} attempts"
            logger.error(f"❌ Job {entry_id} failed permanently after {reason}: {message}")
        else:
            logger.warning(
                f"Job {entry_id} failed (attempt {attempts}/{self.max_attempts}), "
                f"retrying in {delay:.0f}s: {message}"
            )
        return outcome

    async def get_by_material(self, material_id: str) -> dict | None:
        async with self.db.session() as session:
            entry = await session.scalar(
                select(ProcessingQueueEntry).where(ProcessingQueueEntry.material_id == material_id)
            )
            return entry.to_dict() if entry else None

    async def stats(self) -> dict:
        """Queue counters. ``processing`` counts entries under an active claim."""
        now = self._clock()
        async with self.db.session() as session:
            total = await session.scalar(select(func.count()).select_from(ProcessingQueueEntry))
            processing = await session.scalar(
                select(func.count())
                .select_from(ProcessingQueueEntry)
                .where(
                    ProcessingQueueEntry.claimed_at.is_not(None),
                    ProcessingQueueEntry.available_at > now,
                )
            )
            failed = await session.scalar(
                select(func.count()).select_from(Material).where(Material.status == MaterialStatus.FAILED)
            )

        return {
            "pending": total - processing,
            "processing": processing,
            "total": total,
            "failed_materials": failed,
        }

    def _invalidate(self, material_id: str) -> None:
        if self.invalidation is not None:
            self.invalidation.material(material_id)
