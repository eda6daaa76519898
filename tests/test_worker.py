"""Tests for the queue worker."""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from learnhub.errors import CorruptDocumentError, DatabaseError, TransientIOError
from learnhub.models import MaterialStatus
from learnhub.queue import FailureOutcome, QueueJob
from learnhub.rag.ingest import IngestionService
from learnhub.rag.parser import TextChunk
from learnhub.worker import QueueWorker


@pytest.fixture
def job(material_record):
    return QueueJob(entry_id="job-1", material=material_record, attempts=0, enqueued_at=datetime(2024, 1, 1))


@pytest.fixture
def mock_queue(job):
    queue = MagicMock()
    queue.claim_next = AsyncMock(return_value=job)
    queue.mark_processing = AsyncMock()
    queue.complete = AsyncMock()
    queue.fail = AsyncMock(return_value=FailureOutcome.RETRY)
    return queue


@pytest.fixture
def ingestion():
    ingestion = MagicMock()
    ingestion.ingest = AsyncMock(return_value=3)
    ingestion.discard = AsyncMock()
    return ingestion


@pytest.fixture
def worker(mock_queue, ingestion, worker_config):
    return QueueWorker(mock_queue, ingestion, settings=worker_config)


class TestRunCycle:
    """Tests for a single polling cycle."""

    @pytest.mark.asyncio
    async def test_successful_job(self, worker, mock_queue, ingestion, material_record):
        """Should ingest the material and complete the entry."""
        assert await worker.run_cycle() is True

        ingestion.ingest.assert_awaited_once_with(material_record)
        mock_queue.complete.assert_awaited_once_with("job-1", 3)
        assert worker.status().jobs_processed == 1

    @pytest.mark.asyncio
    async def test_idle_cycle(self, worker, mock_queue, ingestion):
        """Should do nothing and keep the interval when the queue is empty."""
        mock_queue.claim_next.return_value = None

        assert await worker.run_cycle() is False

        ingestion.ingest.assert_not_awaited()
        assert worker.current_interval == 5.0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retryable(self, worker, mock_queue, ingestion):
        """Should hand transient errors to the queue as retryable."""
        error = TransientIOError("download timed out")
        ingestion.ingest.side_effect = error

        assert await worker.run_cycle() is True

        mock_queue.fail.assert_awaited_once_with("job-1", error, terminal=False)
        mock_queue.complete.assert_not_awaited()
        assert worker.status().last_error == "download timed out"

    @pytest.mark.asyncio
    async def test_corrupt_document_is_terminal(self, worker, mock_queue, ingestion):
        """Should mark corrupt documents as terminal failures."""
        error = CorruptDocumentError("not a PDF")
        ingestion.ingest.side_effect = error

        await worker.run_cycle()

        mock_queue.fail.assert_awaited_once_with("job-1", error, terminal=True)

    @pytest.mark.asyncio
    async def test_completion_failure_discards_chunks(self, worker, mock_queue, ingestion, material_record):
        """Should remove stored chunks when the entry cannot be completed."""
        mock_queue.complete.side_effect = DatabaseError("database is locked")

        await worker.run_cycle()

        ingestion.discard.assert_awaited_once_with(material_record.id)
        mock_queue.fail.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ingest_failure_leaves_cleanup_to_ingestion(self, worker, ingestion):
        """Should not discard again when ingestion itself failed."""
        ingestion.ingest.side_effect = TransientIOError("boom")

        await worker.run_cycle()

        ingestion.discard.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_queue_errors_do_not_escape(self, worker, mock_queue):
        """Should count claim failures as errors and keep going."""
        mock_queue.claim_next.side_effect = RuntimeError("database is locked")

        assert await worker.run_cycle() is False
        assert worker.consecutive_errors == 1


class TestBackoff:
    """Tests for interval backoff."""

    @pytest.mark.asyncio
    async def test_three_failures_then_success(self, worker, ingestion):
        """Should grow the interval by 1.5x per error and reset on success."""
        ingestion.ingest.side_effect = TransientIOError("boom")
        for _ in range(3):
            await worker.run_cycle()

        assert worker.consecutive_errors == 3
        assert worker.current_interval == pytest.approx(16.875)

        ingestion.ingest.side_effect = None
        await worker.run_cycle()

        assert worker.consecutive_errors == 0
        assert worker.current_interval == 5.0

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, worker, ingestion):
        """Should never exceed the maximum backoff."""
        ingestion.ingest.side_effect = TransientIOError("boom")
        for _ in range(20):
            await worker.run_cycle()

        assert worker.current_interval == 60.0

    def test_set_poll_interval(self, worker):
        """Should update both intervals and enforce the minimum."""
        worker.set_poll_interval(2.0)
        assert worker.status().poll_interval == 2.0
        assert worker.status().current_interval == 2.0

        with pytest.raises(ValueError):
            worker.set_poll_interval(0.5)


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_runs_first_cycle_immediately(self, worker, mock_queue):
        """Should poll right away and stop cleanly."""
        mock_queue.claim_next.return_value = None

        worker.start()
        await asyncio.sleep(0.05)

        assert worker.is_running
        mock_queue.claim_next.assert_awaited()

        await worker.stop()
        assert not worker.status().is_running

    @pytest.mark.asyncio
    async def test_stop_cancels_slow_job(self, worker, mock_queue, ingestion):
        """Should cancel the in-flight job after the grace period."""
        started = asyncio.Event()

        async def slow_ingest(material):
            started.set()
            await asyncio.sleep(30)

        ingestion.ingest.side_effect = slow_ingest

        worker.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await worker.stop(grace_period=0.05)

        assert not worker.is_running
        mock_queue.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, worker):
        """Should be a no-op."""
        await worker.stop()
        assert not worker.is_running


class TestWithDatabase:
    """Tests against the real queue."""

    @pytest.mark.asyncio
    async def test_processes_queued_material(self, queue, repository, material_factory, ingestion, worker_config):
        """Should drive a queued material to completed."""
        material = await material_factory()
        await queue.enqueue(material.id)
        worker = QueueWorker(queue, ingestion, settings=worker_config)

        assert await worker.trigger_processing() is True

        stored = await repository.get(material.id)
        assert stored.status is MaterialStatus.COMPLETED
        assert stored.chunks_count == 3
        assert (await queue.stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_terminal_failure_fails_material(self, queue, repository, material_factory, ingestion, worker_config):
        """Should mark the material failed on a corrupt document."""
        material = await material_factory()
        await queue.enqueue(material.id)
        ingestion.ingest.side_effect = CorruptDocumentError("Downloaded file is not a valid PDF")
        worker = QueueWorker(queue, ingestion, settings=worker_config)

        await worker.trigger_processing()

        stored = await repository.get(material.id)
        assert stored.status is MaterialStatus.FAILED
        assert stored.processing_error == "Downloaded file is not a valid PDF"

    @pytest.mark.asyncio
    async def test_completion_failure_removes_stored_chunks(
        self, queue, repository, chunk_store, fake_embedder, material_factory, worker_config
    ):
        """Should leave no chunks behind for a material that did not complete."""
        material = await material_factory()
        await queue.enqueue(material.id)

        pipeline = MagicMock()
        pipeline.process = AsyncMock(return_value=[TextChunk(0, "Cells divide."), TextChunk(1, "Plants grow.")])
        ingestion = IngestionService(pipeline, fake_embedder, chunk_store)
        queue.complete = AsyncMock(side_effect=DatabaseError("database is locked"))
        worker = QueueWorker(queue, ingestion, settings=worker_config)

        await worker.run_cycle()

        stored = await repository.get(material.id)
        assert stored.status is MaterialStatus.PENDING
        assert await chunk_store.count(material.id) == 0
