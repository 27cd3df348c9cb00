"""
Memory systems for the chatbot.

Provides:
- Conversation transcripts (Firestore)
- Distilled long-term memories (Milvus memory collection)
"""

from libs.memory.conversation import ConversationStore
from libs.memory.distiller import MemoryDistiller, format_turn

__all__ = ["ConversationStore", "MemoryDistiller", "format_turn"]
