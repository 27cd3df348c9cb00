"""Milvus-based vector store for the chatbot.

Two logical indices live in Milvus:

- the document corpus (shared, no ownership filter)
- conversation memories (always filtered to one user + conversation)

Both are queried through the Milvus Cloud HTTP v2 API with approximate
nearest-neighbour search. Ownership filters are compiled into the store's own
filter expression so that filtering happens before the top-k cut.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
import structlog
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from libs.common.settings import Settings, get_settings
from libs.vectors.embeddings import is_transient_http_error

logger = structlog.get_logger(__name__)

MEMORY_OWNER_FIELDS = ("user_id", "conversation_id")


class VectorStoreError(RuntimeError):
    """Raised when a vector store request fails."""


class SearchHit(BaseModel):
    """A single ranked search result."""

    content: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


def build_filter_expression(filters: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Compile equality constraints into a Milvus boolean expression.

    String values are JSON-quoted so embedded quotes and backslashes are escaped.
    """
    if not filters:
        return None
    clauses = []
    for field, value in filters.items():
        if isinstance(value, bool):
            literal = "true" if value else "false"
        elif isinstance(value, (int, float)):
            literal = str(value)
        else:
            literal = json.dumps(str(value), ensure_ascii=False)
        clauses.append(f"{field} == {literal}")
    return " and ".join(clauses)


class MilvusVectorStore:
    """
    Milvus HTTP client for vector search and inserts.

    Usage:
        store = MilvusVectorStore.from_settings()
        hits = await store.search_documents(query_vector)
        memories = await store.search_memories(query_vector, user_id, conversation_id)
    """

    def __init__(
        self,
        endpoint: Optional[str],
        token: Optional[str],
        documents_collection: str = "chatbot_documents",
        memories_collection: str = "chatbot_memories",
        vector_field: str = "embedding",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.token = token
        self.documents_collection = documents_collection
        self.memories_collection = memories_collection
        self.vector_field = vector_field
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MilvusVectorStore":
        settings = settings or get_settings()
        return cls(
            endpoint=settings.milvus_endpoint,
            token=settings.milvus_token,
            documents_collection=settings.milvus_documents_collection,
            memories_collection=settings.milvus_memories_collection,
            vector_field=settings.milvus_vector_field,
        )

    @property
    def base_url(self) -> str:
        if not self.endpoint:
            raise VectorStoreError("Milvus endpoint not configured")
        # Milvus Cloud format: https://in03-xxx.api.gcp-us-west1.zillizcloud.com:443
        base = self.endpoint.rstrip("/").replace(":443", "").replace(":19530", "")
        if not base.endswith("/v2/vectordb"):
            base += "/v2/vectordb"
        return base

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def search(
        self,
        query_vector: Sequence[float],
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = 5,
        num_candidates: int = 100,
        min_score: Optional[float] = None,
        output_fields: Sequence[str] = ("content",),
    ) -> List[SearchHit]:
        """
        Approximate nearest-neighbour search against a collection.

        Args:
            query_vector: Query embedding
            collection: Milvus collection name
            filters: Equality constraints applied inside the store
            limit: Number of hits to return
            num_candidates: Search breadth (HNSW ``ef``)
            min_score: Drop hits scoring below this cutoff
            output_fields: Scalar fields to project into the hit metadata

        Returns:
            Hits ranked by descending similarity (possibly empty)
        """
        fields = list(dict.fromkeys(["content", *output_fields]))
        payload: Dict[str, Any] = {
            "collectionName": collection,
            "data": [list(query_vector)],
            "annsField": self.vector_field,
            "limit": limit,
            "outputFields": fields,
            "searchParams": {
                "metricType": "COSINE",
                "params": {"ef": max(num_candidates, limit)},
            },
        }
        expression = build_filter_expression(filters)
        if expression:
            payload["filter"] = expression

        data = await self._post("/entities/search", payload)

        hits = []
        for row in data.get("data") or []:
            score = float(row.get("distance", 0.0))
            if min_score is not None and score < min_score:
                continue
            metadata = {key: row[key] for key in fields if key != "content" and key in row}
            hits.append(SearchHit(content=row.get("content") or "", score=score, metadata=metadata))

        hits.sort(key=lambda hit: hit.score, reverse=True)

        logger.info(
            "Vector search completed",
            collection=collection,
            filtered=expression is not None,
            results_count=len(hits),
            top_score=hits[0].score if hits else 0,
        )
        return hits

    async def search_documents(
        self,
        query_vector: Sequence[float],
        limit: int = 5,
        num_candidates: int = 100,
        min_score: Optional[float] = None,
    ) -> List[SearchHit]:
        """Search the shared document corpus."""
        return await self.search(
            query_vector,
            self.documents_collection,
            limit=limit,
            num_candidates=num_candidates,
            min_score=min_score,
        )

    async def search_memories(
        self,
        query_vector: Sequence[float],
        user_id: str,
        conversation_id: str,
        limit: int = 5,
        num_candidates: int = 100,
        min_score: Optional[float] = None,
    ) -> List[SearchHit]:
        """Search memories owned by exactly one (user, conversation) pair."""
        owner = {"user_id": user_id, "conversation_id": conversation_id}
        hits = await self.search(
            query_vector,
            self.memories_collection,
            filters=owner,
            limit=limit,
            num_candidates=num_candidates,
            min_score=min_score,
            output_fields=("content", *MEMORY_OWNER_FIELDS, "created_at"),
        )

        owned = [hit for hit in hits if all(hit.metadata.get(k) == v for k, v in owner.items())]
        if len(owned) != len(hits):
            logger.warning(
                "Dropped memory hits outside owner scope",
                user_id=user_id,
                conversation_id=conversation_id,
                dropped=len(hits) - len(owned),
            )
        return owned

    async def insert(self, collection: str, rows: List[Dict[str, Any]]) -> int:
        """Insert rows into a collection, returning the inserted count."""
        if not rows:
            return 0
        data = await self._post("/entities/insert", {"collectionName": collection, "data": rows})
        inserted = (data.get("data") or {}).get("insertCount", len(rows))
        logger.info("Vector rows inserted", collection=collection, count=inserted)
        return inserted

    @retry(
        retry=retry_if_exception(is_transient_http_error),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _request(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(f"{self.base_url}{path}", headers=self.headers, json=payload)
            response.raise_for_status()
            return response.json()

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            data = await self._request(path, payload)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Milvus request failed", path=path, error=str(e))
            raise VectorStoreError(f"Milvus request to {path} failed: {e}") from e

        # Milvus reports application errors with HTTP 200 and a non-zero code
        code = data.get("code", 0)
        if code not in (0, 200):
            logger.error("Milvus returned error", path=path, code=code, message=data.get("message"))
            raise VectorStoreError(f"Milvus error {code}: {data.get('message', 'unknown error')}")
        return data
