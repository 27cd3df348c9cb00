"""
Long-term memory distillation.

Summarizes a question/answer turn into a one-sentence memory fact, embeds it
and appends it to the Milvus memory collection for the owning
(user, conversation) pair.
"""

from typing import Optional

import structlog
from langchain_core.messages import HumanMessage, SystemMessage

from libs.models.records import MemoryRecord

logger = structlog.get_logger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "Bạn là trợ lý ghi nhớ hội thoại. Hãy tóm tắt đoạn hội thoại dưới đây thành "
    "đúng một câu, nêu rõ câu hỏi của người dùng và nội dung câu trả lời. "
    "Chỉ trả về câu tóm tắt, không thêm bình luận."
)


def format_turn(question: str, answer: str) -> str:
    """Render a turn as the raw text handed to the summarizer."""
    return f"Câu hỏi: {question}\nTrả lời: {answer}"


class MemoryDistiller:
    """
    Distills conversation turns into compact, searchable memory records.

    Features:
    - LLM one-sentence summarization
    - Length threshold so only useful answers are remembered
    - Records scoped to (user, conversation)

    Usage:
        distiller = MemoryDistiller(embedding_client, vector_store, min_answer_chars=50)
        if distiller.should_distill(answer):
            await distiller.save_memory(user_id, conversation_id, format_turn(question, answer))
    """

    def __init__(
        self,
        embedding_client,
        vector_store,
        llm=None,
        model: str = "gpt-4o-mini",
        min_answer_chars: int = 50,
        api_key: Optional[str] = None,
    ):
        """
        Initialize memory distiller.

        Args:
            embedding_client: Client exposing ``embed(text)``
            vector_store: MilvusVectorStore holding the memory collection
            llm: Chat model used for summaries (created lazily if omitted)
            model: OpenAI chat model name for the lazily created model
            min_answer_chars: Answers must be longer than this to be distilled
            api_key: OpenAI key for the lazily created model (env fallback)
        """
        self.embedding_client = embedding_client
        self.vector_store = vector_store
        self.model = model
        self.min_answer_chars = min_answer_chars
        self.api_key = api_key
        self._llm = llm

    def _get_llm(self):
        if self._llm is None:
            from langchain_openai import ChatOpenAI

            self._llm = ChatOpenAI(
                model=self.model,
                temperature=0,
                max_tokens=150,
                timeout=15.0,
                **({"api_key": self.api_key} if self.api_key else {}),
            )
        return self._llm

    def should_distill(self, answer: str) -> bool:
        """Only answers longer than the threshold are worth remembering."""
        return len(answer.strip()) > self.min_answer_chars

    async def summarize(self, turn_text: str) -> str:
        """
        Summarize a turn into one sentence.

        Args:
            turn_text: Raw question + answer text

        Returns:
            The model's summary
        """
        response = await self._get_llm().ainvoke([
            SystemMessage(content=SUMMARY_SYSTEM_PROMPT),
            HumanMessage(content=turn_text),
        ])
        summary = (response.content or "").strip()

        logger.debug(
            "Turn summarized",
            original_length=len(turn_text),
            summary_length=len(summary),
        )
        return summary

    async def save_memory(
        self,
        user_id: str,
        conversation_id: str,
        turn_text: str,
    ) -> Optional[MemoryRecord]:
        """
        Summarize, embed and store a memory record.

        Args:
            user_id: Owning user
            conversation_id: Owning conversation
            turn_text: Raw question + answer text

        Returns:
            The stored record, or None when the model produced no summary
        """
        summary = await self.summarize(turn_text)
        if not summary:
            logger.warning("Empty memory summary, skipping", user_id=user_id, conversation_id=conversation_id)
            return None

        embedding = await self.embedding_client.embed(summary)
        record = MemoryRecord(
            user_id=user_id,
            conversation_id=conversation_id,
            content=summary,
            embedding=embedding,
        )

        await self.vector_store.insert(
            self.vector_store.memories_collection,
            [{
                "user_id": record.user_id,
                "conversation_id": record.conversation_id,
                "content": record.content,
                "embedding": record.embedding,
                "created_at": record.created_at.isoformat(),
            }],
        )

        logger.info(
            "Memory saved",
            user_id=user_id,
            conversation_id=conversation_id,
            summary_length=len(summary),
        )
        return record
