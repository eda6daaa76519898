"""Shared fixtures for tests."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from qdrant_client import AsyncQdrantClient

from learnhub.cache import CacheInvalidation, CacheService
from learnhub.config import RAGSettings, WorkerSettings
from learnhub.database import Database
from learnhub.models import MaterialRecord, MaterialStatus
from learnhub.queue import ProcessingQueue
from learnhub.rag.store import ChunkStore
from learnhub.repository import MaterialRepository
from learnhub.storage import StoredBlob

DIMENSION = 4


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeEmbedder:
    """Embeds every document to the same vector and queries to ``query_vector``."""

    def __init__(self, document_vector=None, query_vector=None):
        self.document_vector = document_vector or [1.0, 0.0, 0.0, 0.0]
        self.query_vector = query_vector or [1.0, 0.0, 0.0, 0.0]
        self.dimension = DIMENSION

    async def embed(self, texts):
        return [list(self.document_vector) for _ in texts]

    async def embed_query(self, text):
        return list(self.query_vector)


def build_pdf(pages: list[str]) -> bytes:
    """Assemble a minimal PDF with one Helvetica text line per page."""
    page_ids = [4 + 2 * i for i in range(len(pages))]
    kids = " ".join(f"{pid} 0 R" for pid in page_ids)

    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        f"<< /Type /Pages /Kids [{kids}] /Count {len(pages)} >>".encode(),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    for page_id, text in zip(page_ids, pages):
        objects.append(
            (
                "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                f"/Resources << /Font << /F1 3 0 R >> >> /Contents {page_id + 1} 0 R >>"
            ).encode()
        )
        escaped = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
        stream = f"BT /F1 12 Tf 72 720 Td ({escaped}) Tj ET".encode("latin-1")
        objects.append(b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream")

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, 1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n".encode() + body + b"\nendobj\n"

    xref_offset = len(out)
    out += f"xref\n0 {len(objects) + 1}\n0000000000 65535 f \n".encode()
    for offset in offsets:
        out += f"{offset:010d} 00000 n \n".encode()
    out += (
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\n"
        f"startxref\n{xref_offset}\n%%EOF\n"
    ).encode()
    return bytes(out)


@pytest.fixture
def pdf_factory():
    """Build PDF bytes from a list of page texts."""
    return build_pdf


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache():
    return CacheService()


@pytest.fixture
def worker_config():
    return WorkerSettings(
        poll_interval=5.0,
        backoff_multiplier=1.5,
        max_backoff=60.0,
        shutdown_grace_period=0.5,
        max_attempts=3,
        retry_base_delay=30.0,
        retry_max_delay=900.0,
        claim_lease=600.0,
    )


@pytest.fixture
def rag_config():
    return RAGSettings(
        openai_api_key="test-key",
        openai_embedding_dimension=DIMENSION,
        qdrant_location=":memory:",
        qdrant_collection="test_chunks",
        embedding_batch_size=2,
        follow_up_suggestions=False,
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    """File-backed SQLite database with all tables created."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    await database.init()
    yield database
    await database.dispose()


@pytest.fixture
def repository(db):
    return MaterialRepository(db)


@pytest.fixture
def queue(db, cache, worker_config, clock):
    return ProcessingQueue(db, CacheInvalidation(cache), settings=worker_config, clock=clock)


@pytest_asyncio.fixture
async def chunk_store(rag_config):
    store = ChunkStore(AsyncQdrantClient(location=":memory:"), settings=rag_config)
    await store.ensure_collection()
    yield store
    await store.close()


@pytest.fixture
def material_factory(repository):
    """Create material rows."""

    async def create(title="Week 1 Notes", course_id="course-1", **kwargs):
        return await repository.create(
            title=title,
            course_id=course_id,
            file_url=kwargs.pop("file_url", f"https://files.test/{title.replace(' ', '_')}.pdf"),
            public_id=kwargs.pop("public_id", f"materials/{title.replace(' ', '_')}"),
            **kwargs,
        )

    return create


@pytest.fixture
def material_record():
    return MaterialRecord(
        id="mat-1",
        title="Week 1 Notes",
        course_id="course-1",
        file_url="https://files.test/week1.pdf",
        status=MaterialStatus.PENDING,
    )


@pytest.fixture
def stored_blob():
    return StoredBlob(
        url="https://res.cloudinary.com/demo/raw/upload/v1700000000/materials/notes.pdf",
        public_id="materials/notes.pdf",
        resource_type="raw",
        format="pdf",
        bytes=1024,
    )


@pytest.fixture
def mock_object_store(stored_blob):
    """Object store that accepts every upload and deletion."""
    store = MagicMock()
    store.upload = AsyncMock(return_value=stored_blob)
    store.delete = AsyncMock(return_value=True)
    store.delete_by_url = AsyncMock(return_value=True)
    store.close = AsyncMock()
    return store


@pytest.fixture
def fake_embedder():
    return FakeEmbedder()
