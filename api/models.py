"""Pydantic models for the chatbot API.

Request and response bodies use the camelCase field names the web client
sends (``userId``, ``conversationId``, ``startDate``); Python code reads the
snake_case attributes.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatRequest(BaseModel):
    """Request model for a chat turn."""

    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(
        ...,
        max_length=4000,
        description="User question",
        examples=["Học phí ngành CNTT là bao nhiêu?"],
    )
    user_id: str = Field(..., alias="userId", max_length=128, description="Caller's user id", examples=["u1"])
    conversation_id: str = Field(
        ...,
        alias="conversationId",
        max_length=128,
        description="Conversation the turn belongs to",
        examples=["c1"],
    )

    @field_validator("question", "user_id", "conversation_id")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:
        """Validate that identifiers and the question are not blank."""
        if not v.strip():
            raise ValueError("must not be empty")
        return v


class ChatResponse(BaseModel):
    """Response model for a non-streaming chat turn."""

    answer: str = Field(description="Full assistant answer")


class SearchRequest(BaseModel):
    """Request model for a corpus search."""

    question: str = Field(..., max_length=4000, description="Search text", examples=["Điểm chuẩn năm 2024"])

    @field_validator("question")
    @classmethod
    def question_must_not_be_empty(cls, v: str) -> str:
        """Validate that the search text is not empty."""
        if not v.strip():
            raise ValueError("Question must not be empty")
        return v


class SearchResult(BaseModel):
    """A ranked corpus passage."""

    content: str = Field(description="Passage text")
    score: float = Field(description="Cosine similarity to the question")


class SearchResponse(BaseModel):
    """Response model for a corpus search."""

    results: list[SearchResult] = Field(default_factory=list)


class UploadResponse(BaseModel):
    """Response model for a PDF upload."""

    message: str = Field(description="Status message")
    chunks: int = Field(ge=0, description="Number of chunks indexed")


class TopQuestion(BaseModel):
    """A canonical question and how often it was asked."""

    question: str
    count: int = Field(ge=1)


class TimeSeriesPoint(BaseModel):
    """Per-day query volume."""

    model_config = ConfigDict(populate_by_name=True)

    date: str = Field(description="Day (YYYY-MM-DD)", examples=["2024-01-01"])
    queries: int = Field(ge=0)
    avg_response_time: float = Field(alias="avgResponseTime", ge=0, description="Seconds")


class ChatbotStats(BaseModel):
    """Aggregate chatbot statistics for a day range."""

    model_config = ConfigDict(populate_by_name=True)

    total_queries: int = Field(alias="totalQueries", ge=0)
    average_response_time: float = Field(alias="averageResponseTime", ge=0, description="Seconds")
    success_rate: float = Field(alias="successRate", ge=0, le=100, description="Percentage of runs without error")
    active_users: int = Field(alias="activeUsers", ge=0)
    top_questions: list[TopQuestion] = Field(alias="topQuestions", default_factory=list)
    time_series_data: list[TimeSeriesPoint] = Field(alias="timeSeriesData", default_factory=list)


class StatsResponse(BaseModel):
    """Response envelope for the stats endpoint."""

    result: bool = True
    data: ChatbotStats


class MessageOut(BaseModel):
    """A single transcript message."""

    message_id: str = Field(alias="messageId")
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime

    model_config = ConfigDict(populate_by_name=True)


class ConversationHistoryResponse(BaseModel):
    """Response model for a paged transcript read."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    conversation_id: str = Field(alias="conversationId")
    messages: list[MessageOut] = Field(default_factory=list)
    total_messages: int = Field(alias="totalMessages", ge=0)
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


class HealthResponse(BaseModel):
    """Response model for health check endpoints.

    Attributes:
        status: Health status (healthy/unhealthy/ready/not_ready)
        service: Service name
        version: Service version
        timestamp: Unix timestamp
        details: Optional additional details
    """

    status: Literal["healthy", "unhealthy", "ready", "not_ready"] = Field(
        description="Health status",
        examples=["healthy"],
    )
    service: str = Field(
        description="Service name",
        examples=["chatbot-api"],
    )
    version: str = Field(
        description="Service version",
        examples=["0.1.0"],
    )
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix timestamp",
        examples=[1703097600.0],
    )
    details: dict[str, str] | None = Field(
        default=None,
        description="Optional additional details",
        examples=[{"redis": "connected", "milvus": "configured"}],
    )
