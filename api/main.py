"""Campus chatbot API service.

FastAPI application exposing the streaming chat endpoint, corpus search and
upload, usage statistics and transcript reads.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from api.models import HealthResponse
from api.orchestrators import answer_orchestrator
from api.routers import chatbot as chatbot_router
from libs.caching.redis_client import close_redis_client
from libs.common.settings import get_settings

SERVICE_NAME = "chatbot-api"
SERVICE_VERSION = "0.1.0"

logging.basicConfig(format="%(message)s", level=get_settings().log_level)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(ensure_ascii=False),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Let detached persistence finish before connections go away
    orchestrator = answer_orchestrator._orchestrator
    if orchestrator is not None:
        await orchestrator.drain()
    await close_redis_client()
    logger.info("Chatbot API shut down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Campus Chatbot API",
        description="Retrieval-augmented campus assistant with conversational memory",
        version=SERVICE_VERSION,
        default_response_class=ORJSONResponse,
        debug=settings.debug,
        lifespan=lifespan,
    )

    # Allow all origins in development
    cors_origins = ["*"] if settings.is_development else settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False if settings.is_development else True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all requests with timing and structured data."""
        start_time = time.time()
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"

        request.state.request_id = request_id

        logger.info(
            "Request started",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            user_agent=request.headers.get("user-agent"),
        )

        try:
            response = await call_next(request)
            process_time = time.time() - start_time

            logger.info(
                "Request completed",
                request_id=request_id,
                status_code=response.status_code,
                process_time_ms=round(process_time * 1000, 2),
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                "Request failed",
                request_id=request_id,
                error=str(e),
                process_time_ms=round(process_time * 1000, 2),
                exc_info=True,
            )
            raise

    app.include_router(chatbot_router.router, prefix="/api", tags=["Chatbot"])

    @app.get("/healthz", response_model=HealthResponse, tags=["Health"])
    async def health_check() -> HealthResponse:
        """Health check endpoint for liveness probes.

        Example:
            ```bash
            curl http://localhost:8000/healthz
            ```
        """
        return HealthResponse(
            status="healthy",
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            timestamp=time.time(),
        )

    @app.get("/readyz", response_model=HealthResponse, tags=["Health"])
    async def readiness_check() -> HealthResponse:
        """Readiness check: reports which backing services are configured."""
        settings = get_settings()
        details = {
            "openai": "configured" if settings.openai_api_key else "missing",
            "milvus": "configured" if settings.milvus_endpoint else "missing",
            "redis": "configured" if settings.redis_url else "disabled",
            "tracing": "enabled" if settings.tracing_enabled else "disabled",
        }
        ready = details["openai"] == "configured" and details["milvus"] == "configured"
        return HealthResponse(
            status="ready" if ready else "not_ready",
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            timestamp=time.time(),
            details=details,
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    # For local development only
    uvicorn.run(
        "api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
