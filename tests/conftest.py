"""
Pytest configuration and fixtures for chatbot tests.

Provides shared fixtures for:
- Isolated settings (CHATBOT_* environment)
- Mock Redis client (fakeredis)
- Fake embedding client, vector store and conversation store
- Mock Firestore document chains
"""

import zlib
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from libs.vectors.milvus import SearchHit


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    from libs.caching.redis_client import reset_redis_client
    from libs.common.settings import get_settings

    monkeypatch.setenv("CHATBOT_APP_ENV", "test")
    monkeypatch.setenv("CHATBOT_TRACING_ENABLED", "false")
    for name in ("CHATBOT_REDIS_URL", "CHATBOT_LANGSMITH_API_KEY", "CHATBOT_OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)

    get_settings.cache_clear()
    reset_redis_client()
    yield
    get_settings.cache_clear()
    reset_redis_client()


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring actual Redis server during tests.
    """
    import fakeredis

    client = fakeredis.FakeAsyncRedis(decode_responses=True)

    yield client

    await client.flushdb()
    await client.aclose()


def random_vector(seed: int, dim: int = 64) -> List[float]:
    return np.random.RandomState(seed).randn(dim).tolist()


def near_vector(base: List[float], seed: int, noise: float = 0.05) -> List[float]:
    """A vector with cosine similarity close to 1 against ``base``."""
    base_arr = np.array(base)
    jitter = np.random.RandomState(seed).randn(len(base)) * noise
    return (base_arr + jitter).tolist()


class FakeEmbeddingClient:
    """Deterministic embeddings: explicit mapping first, seeded random otherwise."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, dim: int = 64, fail: bool = False):
        self.vectors = vectors or {}
        self.dim = dim
        self.fail = fail
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        from libs.vectors.embeddings import EmbeddingError

        self.calls.append(text)
        if self.fail:
            raise EmbeddingError("embedding service unavailable")
        if text in self.vectors:
            return self.vectors[text]
        return random_vector(zlib.crc32(text.encode("utf-8")), self.dim)

    async def embed_many(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed(text) for text in texts]


class FakeVectorStore:
    """In-memory stand-in for MilvusVectorStore."""

    documents_collection = "chatbot_documents"
    memories_collection = "chatbot_memories"

    def __init__(self, documents: Optional[List[SearchHit]] = None, memories: Optional[List[dict]] = None):
        self.documents = documents or []
        self.memories = memories or []
        self.inserted: Dict[str, List[dict]] = {}
        self.fail_documents = False
        self.fail_memories = False
        self.memory_queries: List[tuple] = []

    async def search_documents(self, query_vector, limit=5, num_candidates=100, min_score=None):
        from libs.vectors.milvus import VectorStoreError

        if self.fail_documents:
            raise VectorStoreError("document search failed")
        return self.documents[:limit]

    async def search_memories(self, query_vector, user_id, conversation_id, limit=5, num_candidates=100, min_score=None):
        from libs.vectors.milvus import VectorStoreError

        self.memory_queries.append((user_id, conversation_id))
        if self.fail_memories:
            raise VectorStoreError("memory search failed")
        owned = [
            SearchHit(content=m["content"], score=m.get("score", 0.9), metadata={"user_id": user_id, "conversation_id": conversation_id})
            for m in self.memories
            if m["user_id"] == user_id and m["conversation_id"] == conversation_id
        ]
        return owned[:limit]

    async def insert(self, collection: str, rows: List[dict]) -> int:
        self.inserted.setdefault(collection, []).extend(rows)
        return len(rows)


class FakeConversationStore:
    """Records appended turns in memory."""

    def __init__(self, fail: bool = False):
        self.turns: List[tuple] = []
        self.fail = fail

    async def append_turn(self, user_id, conversation_id, question, answer):
        if self.fail:
            raise RuntimeError("firestore unavailable")
        self.turns.append((user_id, conversation_id, question, answer))


@pytest.fixture
def embedding_client():
    return FakeEmbeddingClient()


@pytest.fixture
def vector_store():
    return FakeVectorStore()


@pytest.fixture
def conversation_store():
    return FakeConversationStore()


@pytest.fixture
def mock_firestore():
    """Mock Firestore client with the chain client.collection().document()."""
    mock_client = MagicMock()
    mock_collection = MagicMock()
    mock_doc_ref = AsyncMock()

    mock_client.collection.return_value = mock_collection
    mock_collection.document.return_value = mock_doc_ref

    return mock_client, mock_doc_ref


@pytest.fixture
def make_embedding_client():
    return FakeEmbeddingClient


@pytest.fixture
def make_vector_store():
    return FakeVectorStore


@pytest.fixture
def vectors():
    """Helpers for building related and unrelated test vectors."""

    class Vectors:
        random = staticmethod(random_vector)
        near = staticmethod(near_vector)

    return Vectors


@pytest.fixture
def failing_conversation_store():
    return FakeConversationStore(fail=True)
