"""Chatbot shared libraries.

This package contains reusable components:
- common: Configuration
- vectors: Embeddings, similarity and the Milvus adapter
- memory: Conversation transcripts and distilled memories
- analytics: Top-question catalog
- caching: Redis connection management
"""
