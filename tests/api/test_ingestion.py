"""
Tests for PDF ingestion.

Tests verify:
- Chunk sizes, overlap and whitespace-aware cuts
- Chunk rows carry content, embedding and source metadata
- Unreadable or empty uploads are rejected
"""

import fitz
import pytest

from api.ingestion import DocumentIngestor, IngestionError, chunk_text, extract_text_from_pdf, normalize_text


def make_pdf(*pages: str) -> bytes:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


LONG_TEXT = " ".join(f"word{i}" for i in range(600))


class TestChunkText:
    def test_short_text_is_one_chunk(self):
        assert chunk_text("Tuition is 30 million VND per year.") == ["Tuition is 30 million VND per year."]

    def test_empty_text(self):
        assert chunk_text("   \n\n ") == []

    def test_chunks_respect_size(self):
        chunks = chunk_text(LONG_TEXT, chunk_size=500, overlap=50)

        assert len(chunks) > 1
        assert all(len(chunk) <= 500 for chunk in chunks)

    def test_cuts_on_whitespace(self):
        chunks = chunk_text(LONG_TEXT, chunk_size=500, overlap=50)

        words = set(LONG_TEXT.split())
        # Each chunk ends on a whole word
        assert all(chunk.split()[-1] in words for chunk in chunks)

    def test_consecutive_chunks_overlap(self):
        chunks = chunk_text(LONG_TEXT, chunk_size=500, overlap=50)

        for previous, current in zip(chunks, chunks[1:]):
            assert previous.split()[-1] in current

    def test_covers_all_text(self):
        chunks = chunk_text(LONG_TEXT, chunk_size=500, overlap=50)

        assert chunks[0].startswith("word0 ")
        assert chunks[-1].endswith("word599")

    def test_unbroken_text_still_advances(self):
        chunks = chunk_text("x" * 1200, chunk_size=500, overlap=50)

        assert [len(c) for c in chunks] == [500, 500, 300]

    def test_overlap_must_be_smaller_than_size(self):
        with pytest.raises(ValueError):
            chunk_text(LONG_TEXT, chunk_size=100, overlap=100)


def test_normalize_text_collapses_whitespace():
    assert normalize_text("  a \t b\n\n\n\nc  ") == "a b\n\nc"


def test_extract_text_from_pdf():
    text = extract_text_from_pdf(make_pdf("Admissions open in June", "Tuition is 30 million"))

    assert "Admissions open in June" in text
    assert text.index("Admissions") < text.index("Tuition")


def test_invalid_pdf_raises():
    with pytest.raises(IngestionError):
        extract_text_from_pdf(b"definitely not a pdf")


@pytest.fixture
def ingestor(embedding_client, vector_store):
    return DocumentIngestor(embedding_client, vector_store, chunk_size=500, chunk_overlap=50)


@pytest.mark.asyncio
async def test_ingest_text_stores_rows(ingestor, embedding_client, vector_store):
    count = await ingestor.ingest_text(LONG_TEXT, source="handbook.pdf")

    rows = vector_store.inserted["chatbot_documents"]
    assert count == len(rows) > 1
    assert [row["metadata"]["chunk_index"] for row in rows] == list(range(count))
    assert all(row["metadata"]["source"] == "handbook.pdf" for row in rows)
    assert all(len(row["embedding"]) == 64 for row in rows)
    assert embedding_client.calls == [row["content"] for row in rows]


@pytest.mark.asyncio
async def test_ingest_pdf(ingestor, vector_store):
    count = await ingestor.ingest_pdf(make_pdf("Library opens at 7am"), filename="library.pdf")

    assert count == 1
    row = vector_store.inserted["chatbot_documents"][0]
    assert row["content"] == "Library opens at 7am"
    assert row["metadata"] == {"source": "library.pdf", "chunk_index": 0}


@pytest.mark.asyncio
async def test_pdf_without_text_rejected(ingestor, vector_store):
    with pytest.raises(IngestionError):
        await ingestor.ingest_pdf(make_pdf(""), filename="blank.pdf")
    assert vector_store.inserted == {}


@pytest.mark.asyncio
async def test_empty_upload_rejected(ingestor):
    with pytest.raises(IngestionError):
        await ingestor.ingest_pdf(b"", filename="empty.pdf")
