"""
Durable conversation transcripts in Firestore.

One transcript document per (user, conversation) pair, stored at
``users/{user_id}/{collection}/{conversation_id}``. Every turn appends a user
message and an assistant message in a single atomic write.
"""

import asyncio
import uuid
import weakref
from typing import Optional, Tuple

import structlog
from google.api_core.exceptions import AlreadyExists, NotFound
from google.cloud.firestore_v1 import ArrayUnion

from libs.models.records import ConversationMessage, ConversationTranscript, utcnow

logger = structlog.get_logger(__name__)


class ConversationStore:
    """
    Append-only transcript log per user and conversation.

    Features:
    - Upsert on every turn (created on first message)
    - Atomic two-message append
    - Per-conversation FIFO ordering of concurrent turns
    - Paged reads

    Usage:
        store = ConversationStore(firestore_client)
        await store.append_turn(user_id, conversation_id, question, answer)
        transcript = await store.get_history(user_id, conversation_id, limit=20)
    """

    def __init__(self, firestore_client, collection: str = "conversations"):
        """
        Initialize conversation store.

        Args:
            firestore_client: Async Firestore client
            collection: Per-user subcollection holding transcripts
        """
        self.firestore = firestore_client
        self.collection = collection
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _doc_ref(self, user_id: str, conversation_id: str):
        return self.firestore.collection(f"users/{user_id}/{self.collection}").document(conversation_id)

    def _lock_for(self, user_id: str, conversation_id: str) -> asyncio.Lock:
        key = (user_id, conversation_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def append_turn(
        self,
        user_id: str,
        conversation_id: str,
        question: str,
        answer: str,
    ) -> None:
        """
        Append one question/answer turn, creating the transcript if absent.

        Args:
            user_id: User identifier
            conversation_id: Conversation identifier
            question: User question
            answer: Full assistant answer
        """
        user_message = ConversationMessage(
            message_id=str(uuid.uuid4()), role="user", content=question, timestamp=utcnow()
        )
        assistant_message = ConversationMessage(
            message_id=str(uuid.uuid4()), role="assistant", content=answer, timestamp=utcnow()
        )
        messages = [user_message.model_dump(), assistant_message.model_dump()]
        updated_at = assistant_message.timestamp

        doc_ref = self._doc_ref(user_id, conversation_id)
        update = {"messages": ArrayUnion(messages), "updated_at": updated_at}

        async with self._lock_for(user_id, conversation_id):
            try:
                await doc_ref.update(update)
            except NotFound:
                try:
                    await doc_ref.create({
                        "user_id": user_id,
                        "conversation_id": conversation_id,
                        "messages": messages,
                        "created_at": user_message.timestamp,
                        "updated_at": updated_at,
                    })
                except AlreadyExists:
                    # Another process created it between our update and create
                    await doc_ref.update(update)

        logger.debug(
            "Conversation turn saved",
            user_id=user_id,
            conversation_id=conversation_id,
            question_length=len(question),
            answer_length=len(answer),
        )

    async def get_history(
        self,
        user_id: str,
        conversation_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Optional[ConversationTranscript]:
        """
        Read a transcript page in insertion order.

        Args:
            user_id: User identifier
            conversation_id: Conversation identifier
            limit: Maximum messages to return (None = all)
            offset: Messages to skip from the start

        Returns:
            Transcript with the requested page of messages, or None if absent
        """
        snapshot = await self._doc_ref(user_id, conversation_id).get()
        if not snapshot.exists:
            return None

        data = snapshot.to_dict() or {}
        messages = data.get("messages", [])
        page = messages[offset:] if limit is None else messages[offset:offset + limit]

        return ConversationTranscript(
            user_id=user_id,
            conversation_id=conversation_id,
            messages=page,
            total_messages=len(messages),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
