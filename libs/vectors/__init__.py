"""
Vector utilities for the chatbot.

Provides:
- Embedding gateway (OpenAI embeddings over HTTP)
- Cosine similarity
- Milvus vector store adapter (document corpus + conversation memories)
"""

from libs.vectors.embeddings import EmbeddingClient, EmbeddingError
from libs.vectors.milvus import MilvusVectorStore, SearchHit, VectorStoreError
from libs.vectors.similarity import cosine_similarity

__all__ = [
    "EmbeddingClient",
    "EmbeddingError",
    "MilvusVectorStore",
    "SearchHit",
    "VectorStoreError",
    "cosine_similarity",
]
