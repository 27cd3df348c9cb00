"""
Analytics helpers for the chatbot.

Provides:
- Top-question catalog with embedding-based deduplication (Redis)
"""

from libs.analytics.questions import QuestionDeduplicator, normalize_question, question_hash

__all__ = ["QuestionDeduplicator", "normalize_question", "question_hash"]
