"""PDF ingestion into the document corpus.

Extracts text with PyMuPDF, splits it into overlapping character windows that
prefer whitespace boundaries, embeds every chunk and inserts the rows into the
Milvus document collection.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import fitz  # PyMuPDF
import structlog

from libs.common.settings import Settings, get_settings
from libs.vectors.embeddings import EmbeddingClient
from libs.vectors.milvus import MilvusVectorStore

logger = structlog.get_logger(__name__)

EMBED_BATCH_SIZE = 64


class IngestionError(ValueError):
    """Raised when an upload cannot be turned into corpus chunks."""


def normalize_text(text: str) -> str:
    """Collapse runs of spaces and blank lines."""
    text = re.sub(r"[ \t\r\f\v]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


def chunk_text(text: str, chunk_size: int = 500, overlap: int = 50) -> List[str]:
    """
    Split text into overlapping chunks of at most ``chunk_size`` characters.

    Cuts fall on the last whitespace in the second half of each window when
    there is one. Consecutive windows overlap by ``overlap`` characters.
    """
    if overlap >= chunk_size:
        raise ValueError("overlap must be smaller than chunk_size")

    text = normalize_text(text)
    if not text:
        return []
    if len(text) <= chunk_size:
        return [text]

    chunks = []
    length = len(text)
    pos = 0
    while pos < length:
        end = min(pos + chunk_size, length)
        if end < length:
            boundary = max(text.rfind(" ", pos, end), text.rfind("\n", pos, end))
            if boundary > pos + chunk_size // 2:
                end = boundary

        chunk = text[pos:end].strip()
        if chunk:
            chunks.append(chunk)
        if end >= length:
            break

        # Always move forward, even when the cut left less room than the overlap
        pos = max(end - overlap, pos + 1)

    return chunks


def extract_text_from_pdf(data: bytes) -> str:
    """Extract the text of every page, in page order."""
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as e:
        raise IngestionError(f"Invalid PDF: {e}") from e

    try:
        pages = [doc.load_page(i).get_text() for i in range(len(doc))]
    finally:
        doc.close()
    return "\n\n".join(page for page in pages if page.strip())


class DocumentIngestor:
    """
    Indexes uploaded PDFs into the document collection.

    Usage:
        ingestor = DocumentIngestor.from_settings()
        count = await ingestor.ingest_pdf(pdf_bytes, filename="tuyen-sinh.pdf")
    """

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        vector_store: MilvusVectorStore,
        chunk_size: int = 500,
        chunk_overlap: int = 50,
    ):
        self.embedding_client = embedding_client
        self.vector_store = vector_store
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "DocumentIngestor":
        settings = settings or get_settings()
        return cls(
            embedding_client=EmbeddingClient.from_settings(settings),
            vector_store=MilvusVectorStore.from_settings(settings),
            chunk_size=settings.ingest_chunk_size,
            chunk_overlap=settings.ingest_chunk_overlap,
        )

    async def ingest_text(self, text: str, source: Optional[str] = None) -> int:
        """Chunk, embed and store raw text. Returns the number of chunks stored."""
        chunks = chunk_text(text, self.chunk_size, self.chunk_overlap)
        if not chunks:
            raise IngestionError("Document contains no extractable text")

        rows: List[Dict[str, Any]] = []
        for start in range(0, len(chunks), EMBED_BATCH_SIZE):
            batch = chunks[start:start + EMBED_BATCH_SIZE]
            vectors = await self.embedding_client.embed_many(batch)
            for offset, (content, vector) in enumerate(zip(batch, vectors)):
                rows.append({
                    "content": content,
                    "embedding": vector,
                    "metadata": {"source": source or "upload", "chunk_index": start + offset},
                })

        inserted = await self.vector_store.insert(self.vector_store.documents_collection, rows)
        logger.info("Document ingested", source=source, chunks=len(chunks), inserted=inserted)
        return len(chunks)

    async def ingest_pdf(self, data: bytes, filename: Optional[str] = None) -> int:
        """Index a PDF upload. Returns the number of chunks stored."""
        if not data:
            raise IngestionError("Empty upload")
        text = extract_text_from_pdf(data)
        logger.debug("PDF text extracted", filename=filename, text_length=len(text))
        return await self.ingest_text(text, source=filename)
