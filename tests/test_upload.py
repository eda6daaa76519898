"""Tests for the upload saga."""

from unittest.mock import AsyncMock

import pytest

from learnhub.errors import DatabaseError, TransientIOError, ValidationError
from learnhub.storage import BlobFile
from learnhub.upload import OutcomeKind, UploadSaga, validate_file


def pdf(name="notes.pdf", size=100, content_type="application/pdf"):
    return BlobFile(filename=name, content_type=content_type, data=b"%" * size)


class TestValidateFile:
    """Tests for file validation."""

    def test_accepts_pdf(self):
        """Should accept a small PDF."""
        assert validate_file(pdf(), ["pdf"]) == "pdf"

    def test_rejects_wrong_type(self):
        """Should reject files outside the allowed types."""
        with pytest.raises(ValidationError, match="Invalid file type"):
            validate_file(pdf("notes.txt", content_type="text/plain"), ["pdf"])

    def test_rejects_oversized_pdf(self):
        """Should enforce the 10MB PDF limit."""
        with pytest.raises(ValidationError, match="too large"):
            validate_file(pdf(size=10 * 1024 * 1024 + 1), ["pdf"])

    def test_rejects_empty_file(self):
        """Should reject zero-byte files."""
        with pytest.raises(ValidationError, match="empty"):
            validate_file(pdf(size=0), ["pdf"])

    @pytest.mark.parametrize("name", ["", "../etc/passwd.pdf", "a" * 252 + ".pdf.pdf"])
    def test_rejects_bad_names(self, name):
        """Should reject missing, path-like or overlong names."""
        with pytest.raises(ValidationError):
            validate_file(pdf(name), ["pdf"])


class TestUploadSaga:
    """Tests for UploadSaga."""

    @pytest.mark.asyncio
    async def test_success(self, mock_object_store, stored_blob):
        """Should upload, create the record and return it."""
        create_record = AsyncMock(return_value={"id": "m1"})

        outcome = await UploadSaga(mock_object_store).upload(pdf(), "materials", create_record)

        assert outcome.ok
        assert outcome.kind is OutcomeKind.SUCCESS
        assert outcome.record == {"id": "m1"}
        create_record.assert_awaited_once_with(stored_blob)
        mock_object_store.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_validation_happens_before_upload(self, mock_object_store):
        """Should not touch the object store for invalid files."""
        create_record = AsyncMock()

        outcome = await UploadSaga(mock_object_store).upload(
            pdf("notes.exe", content_type="application/octet-stream"), "materials", create_record
        )

        assert outcome.kind is OutcomeKind.VALIDATION_ERROR
        mock_object_store.upload.assert_not_awaited()
        create_record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_record_failure_deletes_blob(self, mock_object_store, stored_blob):
        """Should compensate and surface the original database error."""
        db_error = DatabaseError("insert failed")
        create_record = AsyncMock(side_effect=db_error)

        outcome = await UploadSaga(mock_object_store).upload(pdf(), "materials", create_record)

        assert not outcome.ok
        assert outcome.error is db_error
        assert outcome.compensated is True
        assert outcome.kind is OutcomeKind.TERMINAL_ERROR
        mock_object_store.delete.assert_awaited_once_with(stored_blob.public_id, stored_blob.resource_type)

        with pytest.raises(DatabaseError):
            outcome.unwrap()

    @pytest.mark.asyncio
    async def test_compensation_failure_is_swallowed(self, mock_object_store):
        """Should keep the original error when blob deletion fails too."""
        db_error = DatabaseError("insert failed")
        mock_object_store.delete = AsyncMock(side_effect=TransientIOError("store down"))

        outcome = await UploadSaga(mock_object_store).upload(
            pdf(), "materials", AsyncMock(side_effect=db_error)
        )

        assert outcome.error is db_error
        assert outcome.compensated is False

    @pytest.mark.asyncio
    async def test_upload_failure_skips_compensation(self, mock_object_store):
        """Should not delete anything when the blob never got stored."""
        mock_object_store.upload = AsyncMock(side_effect=TransientIOError("timeout"))
        create_record = AsyncMock()

        outcome = await UploadSaga(mock_object_store).upload(pdf(), "materials", create_record)

        assert outcome.kind is OutcomeKind.TRANSIENT_ERROR
        create_record.assert_not_awaited()
        mock_object_store.delete.assert_not_awaited()
