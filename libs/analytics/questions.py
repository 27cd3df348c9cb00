"""
Top-question catalog with embedding-based deduplication.

Incoming questions are merged into the first existing cluster whose canonical
question embedding has cosine similarity above the merge threshold, or become
a new cluster. Each source event (an analytics run id) is counted at most once.

Redis layout:
- ``{prefix}:catalog``        list of cluster ids in creation order
- ``{prefix}:cluster:{id}``   hash with question, embedding, count, timestamps
- ``{prefix}:processed``      set of processed source ids
"""

import asyncio
import hashlib
import json
import weakref
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from redis.exceptions import WatchError

from libs.models.records import QuestionCluster, utcnow
from libs.vectors.similarity import cosine_similarity

logger = structlog.get_logger(__name__)

# One merge lock per catalog, shared by every deduplicator in the process
_catalog_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _catalog_lock(catalog_key: str) -> asyncio.Lock:
    lock = _catalog_locks.get(catalog_key)
    if lock is None:
        lock = asyncio.Lock()
        _catalog_locks[catalog_key] = lock
    return lock


def normalize_question(question: str) -> str:
    """Lowercase and collapse whitespace."""
    return " ".join(question.lower().strip().split())


def question_hash(question: str) -> str:
    """Stable cluster id for a canonical question."""
    return hashlib.sha256(normalize_question(question).encode("utf-8")).hexdigest()[:16]


class QuestionDeduplicator:
    """
    Maintains the catalog of canonical questions.

    Usage:
        dedup = QuestionDeduplicator(redis_client, embedding_client, threshold=0.85)
        await dedup.record_question("Học phí ngành CNTT là bao nhiêu?", source_id=run_id)
        top = await dedup.top_questions(limit=10)
    """

    def __init__(
        self,
        redis_client,
        embedding_client,
        threshold: float = 0.85,
        key_prefix: str = "questions",
    ):
        """
        Initialize the deduplicator.

        Args:
            redis_client: Async Redis client (decode_responses=True)
            embedding_client: Client exposing ``embed(text)``
            threshold: Merge when similarity is strictly above this value
            key_prefix: Namespace for Redis keys
        """
        self.redis = redis_client
        self.embedding_client = embedding_client
        self.threshold = threshold
        self.key_prefix = key_prefix
        self._lock = _catalog_lock(self.catalog_key)

    @property
    def catalog_key(self) -> str:
        return f"{self.key_prefix}:catalog"

    @property
    def processed_key(self) -> str:
        return f"{self.key_prefix}:processed"

    def _cluster_key(self, cluster_id: str) -> str:
        return f"{self.key_prefix}:cluster:{cluster_id}"

    async def record_question(
        self,
        question: str,
        source_id: Optional[str] = None,
    ) -> Optional[QuestionCluster]:
        """
        Merge a question into the catalog.

        Args:
            question: Incoming question text
            source_id: Id of the triggering event; each id is counted once

        Returns:
            The merged or created cluster, or None if the question was empty
            or the source id was already processed
        """
        question = question.strip()
        if not question:
            return None

        if source_id is not None:
            claimed = await self.redis.sadd(self.processed_key, source_id)
            if not claimed:
                logger.debug("Source already processed, skipping", source_id=source_id)
                return None

        try:
            embedding = await self.embedding_client.embed(question)
            async with self._lock:
                cluster = await self._merge_or_create(question, embedding)
        except Exception:
            if source_id is not None:
                # Release the claim so a later batch can retry this event
                await self.redis.srem(self.processed_key, source_id)
            raise

        return cluster

    async def process_runs(self, runs: Iterable[Tuple[str, str]]) -> Dict[str, int]:
        """
        Feed a batch of ``(run_id, question)`` pairs through the catalog.

        Per-item failures are logged and counted, never raised.
        """
        summary = {"processed": 0, "skipped": 0, "failed": 0}
        for run_id, question in runs:
            try:
                cluster = await self.record_question(question, source_id=run_id)
            except Exception as e:
                summary["failed"] += 1
                logger.error("Failed to record question", run_id=run_id, error=str(e))
                continue
            summary["processed" if cluster is not None else "skipped"] += 1

        logger.info("Question batch processed", **summary)
        return summary

    async def load_catalog(self) -> List[QuestionCluster]:
        """Load every cluster in creation order."""
        cluster_ids = await self.redis.lrange(self.catalog_key, 0, -1)
        if not cluster_ids:
            return []

        pipe = self.redis.pipeline(transaction=False)
        for cluster_id in cluster_ids:
            pipe.hgetall(self._cluster_key(cluster_id))
        rows = await pipe.execute()

        return [
            self._parse_cluster(cluster_id, row)
            for cluster_id, row in zip(cluster_ids, rows)
            if row
        ]

    async def get_cluster(self, cluster_id: str) -> Optional[QuestionCluster]:
        row = await self.redis.hgetall(self._cluster_key(cluster_id))
        return self._parse_cluster(cluster_id, row) if row else None

    async def top_questions(self, limit: int = 10) -> List[QuestionCluster]:
        """Clusters ordered by count, then most recently updated."""
        catalog = await self.load_catalog()
        catalog.sort(key=lambda c: (c.count, c.updated_at), reverse=True)
        return catalog[:limit]

    async def _merge_or_create(self, question: str, embedding: List[float]) -> QuestionCluster:
        # First match wins, in catalog creation order
        for cluster in await self.load_catalog():
            if not cluster.embedding:
                continue
            try:
                similarity = cosine_similarity(embedding, cluster.embedding)
            except ValueError as e:
                logger.warning("Skipping incomparable cluster", cluster_id=cluster.cluster_id, error=str(e))
                continue
            if similarity > self.threshold:
                logger.debug(
                    "Question merged",
                    cluster_id=cluster.cluster_id,
                    similarity=round(similarity, 4),
                )
                return await self._increment(cluster.cluster_id)

        return await self._create(question, embedding)

    async def _create(self, question: str, embedding: List[float]) -> QuestionCluster:
        cluster_id = question_hash(question)
        key = self._cluster_key(cluster_id)
        now = utcnow()

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.exists(key):
                    await pipe.unwatch()
                    return await self._increment(cluster_id)
                pipe.multi()
                pipe.hset(key, mapping={
                    "question": question,
                    "embedding": json.dumps(embedding),
                    "count": 1,
                    "created_at": now.isoformat(),
                    "updated_at": now.isoformat(),
                })
                pipe.rpush(self.catalog_key, cluster_id)
                await pipe.execute()
            except WatchError:
                # Same canonical question created concurrently elsewhere
                return await self._increment(cluster_id)

        logger.info("Question cluster created", cluster_id=cluster_id, question_preview=question[:50])
        return QuestionCluster(
            cluster_id=cluster_id,
            question=question,
            embedding=embedding,
            count=1,
            created_at=now,
            updated_at=now,
        )

    async def _increment(self, cluster_id: str) -> QuestionCluster:
        key = self._cluster_key(cluster_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, "count", 1)
            pipe.hset(key, "updated_at", utcnow().isoformat())
            await pipe.execute()
        return await self.get_cluster(cluster_id)

    @staticmethod
    def _parse_cluster(cluster_id: str, row: Dict[str, Any]) -> QuestionCluster:
        now = utcnow()
        return QuestionCluster(
            cluster_id=cluster_id,
            question=row.get("question", ""),
            embedding=json.loads(row["embedding"]) if row.get("embedding") else [],
            count=int(row.get("count", 1)),
            created_at=datetime.fromisoformat(row["created_at"]) if row.get("created_at") else now,
            updated_at=datetime.fromisoformat(row["updated_at"]) if row.get("updated_at") else now,
        )
