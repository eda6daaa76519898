"""
Upload saga: "upload blob → create database record" as one logical step.

If record creation fails after the blob is stored, the blob is deleted
again (best-effort) and the original database error is surfaced.
A crash between the two steps leaves an orphaned blob; that is tolerated.
"""

import enum
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Awaitable, Callable, Generic, TypeVar

from .errors import TransientIOError, ValidationError
from .logging_config import logger
from .storage import BlobFile, ObjectStoreClient, StoredBlob

R = TypeVar("R")

MAX_FILENAME_LENGTH = 255
_UNSAFE_FILENAME = re.compile(r"[\x00-\x1f/\\]")


@dataclass(frozen=True)
class FilePolicy:
    mime_types: frozenset[str]
    extensions: frozenset[str]
    max_size: int
    description: str


FILE_POLICIES: dict[str, FilePolicy] = {
    "pdf": FilePolicy(
        mime_types=frozenset({"application/pdf"}),
        extensions=frozenset({".pdf"}),
        max_size=10 * 1024 * 1024,
        description="PDF document",
    ),
    "image": FilePolicy(
        mime_types=frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp", "image/svg+xml"}),
        extensions=frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg"}),
        max_size=5 * 1024 * 1024,
        description="Image file",
    ),
    "video": FilePolicy(
        mime_types=frozenset({"video/mp4", "video/webm", "video/quicktime"}),
        extensions=frozenset({".mp4", ".webm", ".mov"}),
        max_size=50 * 1024 * 1024,
        description="Video file",
    ),
}


def validate_file(file: BlobFile, allowed_types: list[str]) -> str:
    """
    Check name, type and size of a file against the allowed policies.

    Returns:
        The matching policy name.

    Raises:
        ValidationError: if the file is not acceptable.
    """
    if file is None:
        raise ValidationError("No file provided")

    name = (file.filename or "").strip()
    if not name:
        raise ValidationError("File name is required")
    if len(name) > MAX_FILENAME_LENGTH:
        raise ValidationError(f"File name is too long (max {MAX_FILENAME_LENGTH} characters)")
    if _UNSAFE_FILENAME.search(name) or name in {".", ".."}:
        raise ValidationError("File name contains invalid characters")

    if file.size == 0:
        raise ValidationError("File is empty")

    extension = PurePosixPath(name).suffix.lower()
    for type_name in allowed_types:
        policy = FILE_POLICIES[type_name]
        if file.content_type not in policy.mime_types or extension not in policy.extensions:
            continue

        if file.size > policy.max_size:
            raise ValidationError(
                f"File too large: {file.size / (1024 * 1024):.2f}MB",
                detail=f"{policy.description} must be at most {policy.max_size / (1024 * 1024):.0f}MB",
            )
        return type_name

    allowed = ", ".join(sorted(ext for t in allowed_types for ext in FILE_POLICIES[t].extensions))
    raise ValidationError(f"Invalid file type. Allowed types: {allowed}")


class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    TRANSIENT_ERROR = "transient_error"
    TERMINAL_ERROR = "terminal_error"


@dataclass
class UploadTransaction:
    """In-flight state of one upload call."""

    filename: str
    blob: StoredBlob | None = None
    record_created: bool = False

    @property
    def blob_uploaded(self) -> bool:
        return self.blob is not None

    @property
    def needs_compensation(self) -> bool:
        return self.blob_uploaded and not self.record_created


@dataclass
class UploadOutcome(Generic[R]):
    """Result of an upload. Branch on ``kind``; ``error`` is the original exception."""

    kind: OutcomeKind
    record: R | None = None
    error: BaseException | None = None
    blob: StoredBlob | None = None
    compensated: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    def unwrap(self) -> R:
        if self.error is not None:
            raise self.error
        return self.record


def classify(error: BaseException) -> OutcomeKind:
    if isinstance(error, ValidationError):
        return OutcomeKind.VALIDATION_ERROR
    if isinstance(error, TransientIOError):
        return OutcomeKind.TRANSIENT_ERROR
    return OutcomeKind.TERMINAL_ERROR


class UploadSaga:
    """Coordinates blob upload and record creation with blob compensation."""

    def __init__(self, store: ObjectStoreClient, allowed_types: list[str] | None = None):
        self.store = store
        self.allowed_types = allowed_types or ["pdf"]

    async def upload(
        self,
        file: BlobFile,
        upload_preset: str,
        create_record: Callable[[StoredBlob], Awaitable[R]],
        folder: str | None = None,
        tags: list[str] | None = None,
    ) -> UploadOutcome[R]:
        """
        Validate, upload, then create the record.

        Args:
            file: The file to store.
            upload_preset: Target collection/preset at the object store.
            create_record: Persists the record for the stored blob.

        Returns:
            An UploadOutcome. Never raises for expected failures.
        """
        tx = UploadTransaction(filename=file.filename if file else "")

        try:
            validate_file(file, self.allowed_types)
        except ValidationError as e:
            logger.warning(f"[Upload] Rejected {tx.filename or '<no file>'}: {e.message}")
            return UploadOutcome(kind=OutcomeKind.VALIDATION_ERROR, error=e)

        try:
            logger.info(f"[Upload] Uploading {file.filename} to object store")
            tx.blob = await self.store.upload(file, upload_preset, folder=folder, tags=tags)
        except Exception as e:
            logger.error(f"[Upload] Blob upload failed for {file.filename}: {e}")
            return UploadOutcome(kind=classify(e), error=e)

        try:
            record = await create_record(tx.blob)
            tx.record_created = True
        except Exception as e:
            logger.error(f"[Upload] Record creation failed for {file.filename}: {e}")
            compensated = await self._compensate(tx)
            return UploadOutcome(kind=classify(e), error=e, blob=tx.blob, compensated=compensated)

        logger.info(f"[Upload] ✅ Stored {file.filename} and created its record")
        return UploadOutcome(kind=OutcomeKind.SUCCESS, record=record, blob=tx.blob)

    async def _compensate(self, tx: UploadTransaction) -> bool:
        """Delete the orphaned blob. Failures are logged and swallowed."""
        if not tx.needs_compensation:
            return False

        logger.info(f"[Upload] Cleaning up {tx.blob.public_id} after record failure")
        try:
            deleted = await self.store.delete(tx.blob.public_id, tx.blob.resource_type)
        except Exception as e:
            logger.error(f"[Upload] Compensation failed for {tx.blob.public_id}: {e}")
            return False

        if not deleted:
            logger.error(f"[Upload] Object store did not confirm deletion of {tx.blob.public_id}")
        return deleted
