"""Answer orchestrator for the campus chatbot.

Runs one conversational turn end to end:

1. open the turn's root run
2. embed the question once
3. search the document corpus and the caller's memories concurrently
4. assemble a bounded context and build the prompt
5. stream the model answer token by token
6. persist the transcript and distill a memory in a detached task
7. close the root run and signal completion

Retrieval is all-or-nothing: if either search fails the turn fails before any
token is produced. Persistence failures are logged and never surface to the
caller once the answer has been streamed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set

import structlog

from api.composer.prompts import build_answer_messages
from api.observability.tracing import RunTracker, TraceContext
from libs.common.settings import Settings, get_settings
from libs.firestore.client import get_firestore_async_client
from libs.memory.conversation import ConversationStore
from libs.memory.distiller import MemoryDistiller, format_turn
from libs.vectors.embeddings import EmbeddingClient
from libs.vectors.milvus import MilvusVectorStore, SearchHit

logger = structlog.get_logger(__name__)

DEFAULT_CONTEXT_BUDGET = 1500


def assemble_context(
    memories: Sequence[SearchHit],
    documents: Sequence[SearchHit],
    budget: int = DEFAULT_CONTEXT_BUDGET,
) -> str:
    """
    Build the prompt context from retrieved passages.

    Memories come first, then documents, each in rank order, joined by
    newlines. The result is cut to at most ``budget`` characters.
    """
    parts = [hit.content for hit in memories] + [hit.content for hit in documents]
    return "\n".join(parts)[:budget]


@dataclass
class RetrievedContext:
    """Everything retrieval produced for one turn."""

    documents: List[SearchHit] = field(default_factory=list)
    memories: List[SearchHit] = field(default_factory=list)
    context: str = ""


class AnswerOrchestrator:
    """
    Coordinates retrieval, generation and persistence for a chat turn.

    Usage:
        orchestrator = get_orchestrator()
        async for frame in orchestrator.stream_answer(question, user_id, conversation_id):
            ...  # {"token": "..."} frames, then {"done": True}
    """

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        vector_store: MilvusVectorStore,
        conversation_store: ConversationStore,
        distiller: MemoryDistiller,
        tracker: Optional[RunTracker] = None,
        llm=None,
        chat_model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        top_k: int = 5,
        num_candidates: int = 100,
        min_score: Optional[float] = None,
        context_budget: int = DEFAULT_CONTEXT_BUDGET,
    ):
        """
        Args:
            embedding_client: Embeds questions for both searches
            vector_store: Holds the document corpus and the memory index
            conversation_store: Durable transcript log
            distiller: Turns finished turns into memory records
            tracker: Run tracker (a disabled tracker is used when omitted)
            llm: Streaming chat model (ChatOpenAI created lazily if omitted)
            chat_model: OpenAI model name for the lazily created model
            api_key: OpenAI key for the lazily created model
            top_k: Hits per search
            num_candidates: Search breadth
            min_score: Optional relevance cutoff
            context_budget: Maximum context length in characters
        """
        self.embedding_client = embedding_client
        self.vector_store = vector_store
        self.conversation_store = conversation_store
        self.distiller = distiller
        self.tracker = tracker or RunTracker(enabled=False)
        self.chat_model = chat_model
        self.api_key = api_key
        self.top_k = top_k
        self.num_candidates = num_candidates
        self.min_score = min_score
        self.context_budget = context_budget
        self._llm = llm
        self._background_tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "AnswerOrchestrator":
        settings = settings or get_settings()
        embedding_client = EmbeddingClient.from_settings(settings)
        vector_store = MilvusVectorStore.from_settings(settings)
        return cls(
            embedding_client=embedding_client,
            vector_store=vector_store,
            conversation_store=ConversationStore(
                get_firestore_async_client(settings),
                collection=settings.conversations_collection,
            ),
            distiller=MemoryDistiller(
                embedding_client,
                vector_store,
                model=settings.openai_summary_model,
                min_answer_chars=settings.memory_min_answer_chars,
                api_key=settings.openai_api_key,
            ),
            tracker=RunTracker.from_settings(settings),
            chat_model=settings.openai_chat_model,
            api_key=settings.openai_api_key,
            top_k=settings.search_top_k,
            num_candidates=settings.search_num_candidates,
            min_score=settings.min_relevance_score,
            context_budget=settings.context_char_budget,
        )

    def _get_llm(self):
        if self._llm is None:
            from langchain_openai import ChatOpenAI

            self._llm = ChatOpenAI(
                model=self.chat_model,
                temperature=0,
                streaming=True,
                **({"api_key": self.api_key} if self.api_key else {}),
            )
        return self._llm

    def _spawn(self, coro) -> asyncio.Task:
        """Run a coroutine detached from the request, keeping a reference until done."""
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for detached persistence tasks (shutdown and tests)."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        await self.tracker.drain()

    async def search_documents(self, question: str) -> List[SearchHit]:
        """Rank corpus passages for a question without generating an answer."""
        embedding = await self.embedding_client.embed(question)
        return await self.vector_store.search_documents(
            embedding,
            limit=self.top_k,
            num_candidates=self.num_candidates,
            min_score=self.min_score,
        )

    async def retrieve(
        self,
        question: str,
        user_id: str,
        conversation_id: str,
        ctx: TraceContext,
    ) -> RetrievedContext:
        """Embed once, then run both searches concurrently."""
        embedding = await self.embedding_client.embed(question)

        async def documents() -> List[SearchHit]:
            async with self.tracker.stage(ctx, "document_search", {"question": question}, run_type="retriever") as out:
                hits = await self.vector_store.search_documents(
                    embedding,
                    limit=self.top_k,
                    num_candidates=self.num_candidates,
                    min_score=self.min_score,
                )
                out["documents"] = [{"content": h.content, "score": h.score} for h in hits]
            return hits

        async def memories() -> List[SearchHit]:
            inputs = {"question": question, "user_id": user_id, "conversation_id": conversation_id}
            async with self.tracker.stage(ctx, "memory_search", inputs, run_type="retriever") as out:
                hits = await self.vector_store.search_memories(
                    embedding,
                    user_id,
                    conversation_id,
                    limit=self.top_k,
                    num_candidates=self.num_candidates,
                    min_score=self.min_score,
                )
                out["memories"] = [{"content": h.content, "score": h.score} for h in hits]
            return hits

        document_hits, memory_hits = await asyncio.gather(documents(), memories())
        context = assemble_context(memory_hits, document_hits, self.context_budget)

        logger.info(
            "Context assembled",
            correlation_id=ctx.correlation_id,
            documents=len(document_hits),
            memories=len(memory_hits),
            context_length=len(context),
        )
        return RetrievedContext(documents=document_hits, memories=memory_hits, context=context)

    async def stream_answer(
        self,
        question: str,
        user_id: str,
        conversation_id: str,
        correlation_id: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Answer a question as a stream of frames.

        Yields ``{"token": str}`` for every non-empty model chunk, then one
        ``{"done": True}``. Errors before or during generation propagate after
        the root run is closed; no ``done`` frame follows them.
        """
        started = time.time()
        ctx = await self.tracker.start_turn(question, user_id, conversation_id, correlation_id)
        tokens: List[str] = []

        logger.info(
            "Processing chat turn",
            correlation_id=ctx.correlation_id,
            user_id=user_id,
            conversation_id=conversation_id,
            question_length=len(question),
        )

        try:
            retrieved = await self.retrieve(question, user_id, conversation_id, ctx)
            messages = build_answer_messages(question, retrieved.context)

            async with self.tracker.stage(ctx, "model_response", {"question": question, "context": retrieved.context}, run_type="llm") as out:
                async for chunk in self._get_llm().astream(messages):
                    token = chunk.content if isinstance(chunk.content, str) else ""
                    if not token:
                        continue
                    tokens.append(token)
                    yield {"token": token}
                out["answer"] = "".join(tokens)
        except (asyncio.CancelledError, GeneratorExit):
            # Client went away mid-generation; nothing is persisted for a partial turn
            logger.info("Chat turn abandoned by client", correlation_id=ctx.correlation_id, tokens=len(tokens))
            self.tracker.detach(self.tracker.end_turn(ctx, outputs={"partial_answer": "".join(tokens)}, error="client disconnected"))
            raise
        except Exception as e:
            logger.error(
                "Chat turn failed",
                correlation_id=ctx.correlation_id,
                user_id=user_id,
                conversation_id=conversation_id,
                tokens=len(tokens),
                error=str(e),
            )
            await self.tracker.end_turn(ctx, outputs={"partial_answer": "".join(tokens)}, error=str(e))
            raise

        answer = "".join(tokens)
        finalize = self._spawn(self._finalize_turn(ctx, question, answer, retrieved, started))
        # Shielded so a disconnect after generation still completes persistence
        await asyncio.shield(finalize)
        yield {"done": True}

    async def answer(
        self,
        question: str,
        user_id: str,
        conversation_id: str,
        correlation_id: Optional[str] = None,
    ) -> str:
        """Run a turn and return the full answer text."""
        tokens = []
        async for frame in self.stream_answer(question, user_id, conversation_id, correlation_id):
            if "token" in frame:
                tokens.append(frame["token"])
        return "".join(tokens)

    async def _finalize_turn(
        self,
        ctx: TraceContext,
        question: str,
        answer: str,
        retrieved: RetrievedContext,
        started: float,
    ) -> None:
        # append_turn must be the first await so turns queue on the
        # conversation lock in generation order
        saved_at = datetime.now(timezone.utc)
        transcript_saved = False
        save_error = None
        try:
            await self.conversation_store.append_turn(ctx.user_id, ctx.conversation_id, question, answer)
            transcript_saved = True
        except Exception as e:
            save_error = str(e)
            logger.error(
                "Failed to save conversation",
                correlation_id=ctx.correlation_id,
                user_id=ctx.user_id,
                conversation_id=ctx.conversation_id,
                error=save_error,
            )

        memory_saved = False
        if self.distiller.should_distill(answer):
            try:
                record = await self.distiller.save_memory(
                    ctx.user_id, ctx.conversation_id, format_turn(question, answer)
                )
                memory_saved = record is not None
            except Exception as e:
                logger.error(
                    "Failed to save memory",
                    correlation_id=ctx.correlation_id,
                    user_id=ctx.user_id,
                    conversation_id=ctx.conversation_id,
                    error=str(e),
                )

        await self.tracker.record_stage(
            ctx,
            "save_conversation",
            {"question": question, "answer_length": len(answer)},
            started_at=saved_at,
            outputs={"transcript_saved": transcript_saved, "memory_saved": memory_saved},
            error=save_error,
        )

        duration_ms = int((time.time() - started) * 1000)
        await self.tracker.end_turn(
            ctx,
            outputs={
                "answer": answer,
                "documents_used": len(retrieved.documents),
                "memories_used": len(retrieved.memories),
                "transcript_saved": transcript_saved,
                "memory_saved": memory_saved,
                "duration_ms": duration_ms,
            },
        )

        logger.info(
            "Chat turn completed",
            correlation_id=ctx.correlation_id,
            answer_length=len(answer),
            transcript_saved=transcript_saved,
            memory_saved=memory_saved,
            duration_ms=duration_ms,
        )


_orchestrator: Optional[AnswerOrchestrator] = None


def get_orchestrator() -> AnswerOrchestrator:
    """Get or create the global orchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = AnswerOrchestrator.from_settings()
    return _orchestrator
