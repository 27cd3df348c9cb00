from __future__ import annotations

import json
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import StreamingResponse

from api.analytics import ChatbotStatsService, StatsValidationError
from api.ingestion import DocumentIngestor, IngestionError
from api.models import (
    ChatRequest,
    ChatResponse,
    ConversationHistoryResponse,
    MessageOut,
    SearchRequest,
    SearchResponse,
    SearchResult,
    StatsResponse,
    UploadResponse,
)
from api.orchestrators.answer_orchestrator import AnswerOrchestrator, get_orchestrator
from libs.analytics.questions import QuestionDeduplicator
from libs.caching.redis_client import get_redis_client
from libs.common.settings import get_settings
from libs.memory.conversation import ConversationStore
from libs.vectors.embeddings import EmbeddingClient

logger = structlog.get_logger(__name__)
router = APIRouter()

MAX_UPLOAD_BYTES = 20 * 1024 * 1024

_ingestor: Optional[DocumentIngestor] = None


async def build_question_deduplicator() -> Optional[QuestionDeduplicator]:
    """Question catalog backed by Redis, or None when Redis is unreachable."""
    redis_client = await get_redis_client()
    if redis_client is None:
        return None
    settings = get_settings()
    return QuestionDeduplicator(
        redis_client,
        EmbeddingClient.from_settings(settings),
        threshold=settings.question_merge_threshold,
    )


def get_stats_service() -> ChatbotStatsService:
    return ChatbotStatsService.from_settings(deduplicator_factory=build_question_deduplicator)


def get_ingestor() -> DocumentIngestor:
    global _ingestor
    if _ingestor is None:
        _ingestor = DocumentIngestor.from_settings()
    return _ingestor


def get_conversation_store(
    orchestrator: AnswerOrchestrator = Depends(get_orchestrator),
) -> ConversationStore:
    return orchestrator.conversation_store


def _sse(frame: Dict[str, Any]) -> str:
    return f"data: {json.dumps(frame, ensure_ascii=False)}\n\n"


@router.post("/v1/chatbot/chat/stream", tags=["Chatbot"])
async def stream_chat(
    request: Request,
    chat_request: ChatRequest,
    orchestrator: AnswerOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Answer a question as Server-Sent Events.

    Events:
        - ``{"token": "..."}`` for every generated chunk
        - ``{"done": true}`` once the answer is complete
        - ``{"error": "..."}`` if the turn fails (terminal, no ``done`` follows)
    """
    request_id = getattr(request.state, "request_id", None)

    async def generate_sse_stream() -> AsyncGenerator[str, None]:
        try:
            async for frame in orchestrator.stream_answer(
                chat_request.question,
                chat_request.user_id,
                chat_request.conversation_id,
                correlation_id=request_id,
            ):
                yield _sse(frame)
        except Exception as e:
            logger.error(
                "Streaming chat failed",
                request_id=request_id,
                user_id=chat_request.user_id,
                conversation_id=chat_request.conversation_id,
                error=str(e),
            )
            yield _sse({"error": str(e) or "Chat failed"})

    return StreamingResponse(
        generate_sse_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


@router.post("/v1/chatbot/chat", response_model=ChatResponse, tags=["Chatbot"])
async def chat(
    request: Request,
    chat_request: ChatRequest,
    orchestrator: AnswerOrchestrator = Depends(get_orchestrator),
) -> ChatResponse:
    """Answer a question and return the full text."""
    request_id = getattr(request.state, "request_id", None)
    try:
        answer = await orchestrator.answer(
            chat_request.question,
            chat_request.user_id,
            chat_request.conversation_id,
            correlation_id=request_id,
        )
    except Exception as e:
        logger.error("Chat failed", request_id=request_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Chat failed")
    return ChatResponse(answer=answer)


@router.post("/v1/chatbot/search", response_model=SearchResponse, tags=["Chatbot"])
async def search(
    search_request: SearchRequest,
    orchestrator: AnswerOrchestrator = Depends(get_orchestrator),
) -> SearchResponse:
    """Rank corpus passages for a question."""
    try:
        hits = await orchestrator.search_documents(search_request.question)
    except Exception as e:
        logger.error("Search failed", error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Search failed")
    return SearchResponse(results=[SearchResult(content=h.content, score=h.score) for h in hits])


@router.post("/v1/chatbot/upload", response_model=UploadResponse, tags=["Chatbot"])
async def upload_pdf(
    file: UploadFile = File(...),
    ingestor: DocumentIngestor = Depends(get_ingestor),
) -> UploadResponse:
    """Index a PDF into the document corpus."""
    filename = file.filename or "upload.pdf"
    if file.content_type != "application/pdf" and not filename.lower().endswith(".pdf"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only PDF files are accepted")

    data = await file.read()
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large. Maximum size: {MAX_UPLOAD_BYTES} bytes",
        )

    try:
        chunks = await ingestor.ingest_pdf(data, filename=filename)
    except IngestionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error("Upload failed", filename=filename, error=str(e))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Upload failed")

    return UploadResponse(message="PDF uploaded and vector stored successfully.", chunks=chunks)


@router.get("/v1/chatbot/stats", response_model=StatsResponse, response_model_by_alias=True, tags=["Chatbot"])
async def chatbot_stats(
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    service: ChatbotStatsService = Depends(get_stats_service),
) -> StatsResponse:
    """Aggregate chatbot usage for an inclusive day range."""
    try:
        stats = await service.get_stats(start_date, end_date)
    except StatsValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"result": False, "error": e.error, "details": e.details},
        )
    except Exception as e:
        logger.error("Failed to get chatbot stats", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"result": False, "error": "Không thể lấy thống kê chatbot", "details": str(e)},
        )
    return StatsResponse(data=stats)


@router.get(
    "/v1/chatbot/conversations/{user_id}/{conversation_id}",
    response_model=ConversationHistoryResponse,
    response_model_by_alias=True,
    tags=["Chatbot"],
)
async def conversation_history(
    user_id: str,
    conversation_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    offset: int = Query(0, ge=0),
    store: ConversationStore = Depends(get_conversation_store),
) -> ConversationHistoryResponse:
    """Read a page of a conversation transcript."""
    transcript = await store.get_history(user_id, conversation_id, limit=limit, offset=offset)
    if transcript is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")

    return ConversationHistoryResponse(
        user_id=transcript.user_id,
        conversation_id=transcript.conversation_id,
        messages=[
            MessageOut(message_id=m.message_id, role=m.role, content=m.content, timestamp=m.timestamp)
            for m in transcript.messages
        ],
        total_messages=transcript.total_messages,
        created_at=transcript.created_at,
        updated_at=transcript.updated_at,
    )
