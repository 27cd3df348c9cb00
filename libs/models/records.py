"""Pydantic models for persisted chatbot records.

These models define the structure of transcripts (Firestore), memory records
(Milvus memory collection) and question clusters (Redis catalog).
"""
from datetime import datetime, timezone
from typing import List, Literal

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationMessage(BaseModel):
    """A single message within a conversation transcript."""
    message_id: str = Field(..., description="Unique identifier for the message.")
    role: Literal["user", "assistant"] = Field(..., description="The role of the message sender.")
    content: str = Field(..., description="The text content of the message.")
    timestamp: datetime = Field(default_factory=utcnow, description="Timestamp of the message.")


class ConversationTranscript(BaseModel):
    """One transcript per (user, conversation) pair."""
    user_id: str = Field(..., description="UID of the user who owns the conversation.")
    conversation_id: str = Field(..., description="Identifier of the conversation.")
    messages: List[ConversationMessage] = Field(default_factory=list, description="Messages in insertion order.")
    total_messages: int = Field(0, description="Number of stored messages before any read-time paging.")
    created_at: datetime | None = Field(None, description="Timestamp of the first turn.")
    updated_at: datetime | None = Field(None, description="Timestamp of the latest turn.")


class MemoryRecord(BaseModel):
    """A distilled memory fact scoped to one (user, conversation)."""
    user_id: str
    conversation_id: str
    content: str = Field(..., description="One-sentence summary of a turn.")
    embedding: List[float] = Field(..., description="Embedding of the summary.")
    created_at: datetime = Field(default_factory=utcnow)


class QuestionCluster(BaseModel):
    """A canonical question in the top-questions catalog."""
    cluster_id: str = Field(..., description="Hash of the normalized canonical question.")
    question: str = Field(..., description="Canonical question text.")
    embedding: List[float] = Field(default_factory=list, description="Embedding of the canonical question.")
    count: int = Field(1, ge=1, description="Number of merged occurrences.")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
