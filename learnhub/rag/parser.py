"""
Document extraction pipeline.

Downloads a stored PDF, extracts its text layer with pypdf, normalizes the
text and splits it into overlapping chunks ready for embedding.
"""

import asyncio
import io
import re
from dataclasses import dataclass

import httpx
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from ..config import PDF_MAGIC_HEADER, RAGSettings, rag_settings
from ..errors import CorruptDocumentError, ExtractionError, TransientIOError
from ..logging_config import logger
from ..models import MaterialRecord
from ..retry import RetryPolicy, Sleep, with_retry
from ..storage import raise_for_status

_SPACES = re.compile(r"[ \t\f\v]+")
_BLANK_LINES = re.compile(r"\n{3,}")
_ALPHANUMERIC = re.compile(r"[A-Za-z0-9\s]")
_WHITESPACE = re.compile(r"\s")
_SENTENCE_ENDS = (". ", "? ", "! ", ".\n")


@dataclass(frozen=True)
class TextChunk:
    """A contiguous piece of a document. ``index`` preserves document order."""

    index: int
    content: str


@dataclass(frozen=True)
class DocumentText:
    text: str
    page_count: int


def normalize_text(text: str) -> str:
    """
    Clean extracted text.

    Unifies line endings, collapses runs of spaces and tabs, trims every line
    and squeezes three or more newlines into a single blank line.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _SPACES.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _BLANK_LINES.sub("\n\n", text)
    return text.strip()


def alphanumeric_ratio(text: str) -> float:
    if not text:
        return 0.0
    return len(_ALPHANUMERIC.findall(text)) / len(text)


def chunk_text(text: str, chunk_size: int = 1000, overlap: int = 200) -> list[TextChunk]:
    """
    Split text into overlapping chunks.

    Each cut lands on the last paragraph break, else the last sentence break,
    in the back half of the window; otherwise the window is cut hard. The
    next chunk starts ``overlap`` characters back, moved forward to the next
    word boundary.

    Args:
        text: The text to chunk.
        chunk_size: Target size of each chunk in characters.
        overlap: Overlap between chunks. Must be less than half of chunk_size.

    Returns:
        List of TextChunk in document order.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap * 2 >= chunk_size:
        raise ValueError("overlap must be less than half of chunk_size")

    text = text.strip()
    if not text:
        return []
    if len(text) <= chunk_size:
        return [TextChunk(index=0, content=text)]

    pieces = []
    start = 0
    half = chunk_size // 2

    while start < len(text):
        end = min(start + chunk_size, len(text))

        if end < len(text):
            para_break = text.rfind("\n\n", start, end)
            if para_break > start + half:
                end = para_break + 2
            else:
                sentence_break = max(text.rfind(mark, start, end) for mark in _SENTENCE_ENDS)
                if sentence_break > start + half:
                    end = sentence_break + 2

        piece = text[start:end].strip()
        if piece:
            pieces.append(piece)

        if end >= len(text):
            break

        next_start = end - overlap
        boundary = _WHITESPACE.search(text, next_start, end)
        if boundary:
            next_start = boundary.end()
        start = max(next_start, start + 1)

    return [TextChunk(index=i, content=piece) for i, piece in enumerate(pieces)]


def extract_pdf_text(data: bytes) -> DocumentText:
    """
    Extract the text layer of a PDF. Blocking: run it in a thread.

    Raises:
        CorruptDocumentError: if the PDF structure cannot be read.
        ExtractionError: if the document has no pages or no text.
    """
    try:
        reader = PdfReader(io.BytesIO(data))
        page_count = len(reader.pages)
        page_texts = [page.extract_text() or "" for page in reader.pages]
    except PdfReadError as e:
        raise CorruptDocumentError("Unreadable PDF", detail=str(e)) from e
    except (ValueError, KeyError, TypeError) as e:
        raise CorruptDocumentError("Malformed PDF structure", detail=str(e)) from e

    if page_count == 0:
        raise ExtractionError("PDF has no pages")

    text = "\n\n".join(page_texts)
    if not text.strip():
        raise ExtractionError(
            "No text content found in PDF",
            detail="The document may be scanned images without a text layer",
        )

    return DocumentText(text=text, page_count=page_count)


class DocumentPipeline:
    """download → validate → extract → normalize → chunk."""

    def __init__(
        self,
        settings: RAGSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or rag_settings
        self._http = http_client
        self._owns_http = http_client is None
        self._sleep = sleep
        # 1s, 2s, 4s between attempts
        self.download_policy = RetryPolicy(
            max_attempts=self.settings.download_attempts,
            base_delay=self.settings.download_backoff,
            max_delay=self.settings.download_backoff * 4,
            jitter=0.0,
        )

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.download_timeout),
                follow_redirects=True,
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def download(self, url: str) -> bytes:
        """Fetch the document bytes and check the PDF header."""

        async def fetch() -> bytes:
            try:
                response = await self._client().get(url)
            except httpx.TimeoutException as e:
                raise TransientIOError(f"Download timed out: {url}") from e
            except httpx.TransportError as e:
                raise TransientIOError(f"Download failed: {e}") from e

            raise_for_status(response, "File host")
            if not response.content:
                raise TransientIOError(f"Downloaded file is empty: {url}")
            return response.content

        data = await with_retry(fetch, self.download_policy, sleep=self._sleep, description=f"Download of {url}")

        if not data.startswith(PDF_MAGIC_HEADER):
            raise CorruptDocumentError(
                "Downloaded file is not a valid PDF",
                detail=f"Header was {data[:8]!r}",
            )

        logger.info(f"📄 Downloaded {len(data) / 1024:.1f} KB from {url}")
        return data

    async def extract(self, data: bytes) -> DocumentText:
        document = await asyncio.to_thread(extract_pdf_text, data)
        text = normalize_text(document.text)
        if not text:
            raise ExtractionError("No text content left after cleaning")

        ratio = alphanumeric_ratio(text)
        if ratio < self.settings.min_alphanumeric_ratio:
            logger.warning(
                f"⚠️ Extracted text looks noisy: only {ratio:.0%} alphanumeric characters"
            )

        return DocumentText(text=text, page_count=document.page_count)

    async def process(self, material: MaterialRecord) -> list[TextChunk]:
        """
        Turn a material's stored document into ordered chunks.

        Raises:
            TransientIOError: download kept failing.
            CorruptDocumentError, ExtractionError: terminal document problems.
        """
        logger.info(f"Processing '{material.title}' ({material.id})...")

        data = await self.download(material.file_url)
        document = await self.extract(data)
        chunks = chunk_text(document.text, self.settings.chunk_size, self.settings.chunk_overlap)

        if not chunks:
            raise ExtractionError("Document produced no chunks")

        logger.info(
            f"Parsed '{material.title}': {len(document.text)} characters "
            f"from {document.page_count} pages into {len(chunks)} chunks"
        )
        return chunks
