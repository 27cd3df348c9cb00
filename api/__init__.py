"""Campus chatbot API service.

This package contains the FastAPI application and related components
for the campus assistant.

Main components:
- main.py: FastAPI application with health endpoints
- routers/chatbot.py: chat, search, upload, stats and transcript endpoints
- orchestrators/answer_orchestrator.py: retrieval, streaming generation, persistence
- analytics.py: usage statistics from LangSmith runs
- ingestion.py: PDF ingestion into the document corpus
"""

# Avoid importing heavy modules (e.g., FastAPI app) at package import time.
# Intentionally do not re-export runtime objects here.
__all__ = []
