"""
Run tracking for the chatbot pipeline using LangSmith.

Each turn opens a root ``chatbot_conversation`` chain run and one child run
per stage (``document_search``, ``memory_search``, ``model_response``,
``save_conversation``). Run ids travel in a ``TraceContext`` created per turn
and passed down the call chain.

Tracking is purely observational: every call here catches, logs and discards
its own errors so the pipeline never fails because of LangSmith.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Set

import structlog

from libs.common.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

ROOT_RUN_NAME = "chatbot_conversation"
USER_TAG_PREFIX = "user_"
CONVERSATION_TAG_PREFIX = "conversation_"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TraceContext:
    """Per-turn tracing state."""

    correlation_id: str
    user_id: str
    conversation_id: str
    root_run_id: Optional[uuid.UUID] = None
    tags: List[str] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.root_run_id is not None


class RunTracker:
    """
    Records pipeline stages as LangSmith runs.

    Usage:
        tracker = RunTracker.from_settings()
        ctx = await tracker.start_turn(question, user_id, conversation_id)
        run_id = await tracker.start_stage(ctx, "document_search", {"question": question})
        await tracker.end_stage(ctx, run_id, outputs={"count": 3})
        await tracker.end_turn(ctx, outputs={"answer": answer})
    """

    def __init__(self, client=None, project_name: str = "default", enabled: bool = True):
        """
        Args:
            client: ``langsmith.Client`` (tracking is disabled when None)
            project_name: LangSmith project receiving the runs
            enabled: Feature flag
        """
        self.client = client
        self.project_name = project_name
        self.enabled = enabled and client is not None
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RunTracker":
        settings = settings or get_settings()

        if not settings.tracing_enabled:
            logger.info("LangSmith run tracking disabled")
            return cls(client=None, project_name=settings.langsmith_project, enabled=False)

        if not settings.langsmith_api_key:
            logger.warning("CHATBOT_LANGSMITH_API_KEY not set - run tracking will not work")
            return cls(client=None, project_name=settings.langsmith_project, enabled=False)

        from langsmith import Client

        client = Client(api_url=settings.langsmith_endpoint, api_key=settings.langsmith_api_key)
        logger.info(
            "LangSmith run tracking enabled",
            project=settings.langsmith_project,
            endpoint=settings.langsmith_endpoint,
        )
        return cls(client=client, project_name=settings.langsmith_project, enabled=True)

    async def start_turn(
        self,
        question: str,
        user_id: str,
        conversation_id: str,
        correlation_id: Optional[str] = None,
    ) -> TraceContext:
        """Open the root run for a turn."""
        ctx = TraceContext(
            correlation_id=correlation_id or uuid.uuid4().hex,
            user_id=user_id,
            conversation_id=conversation_id,
            tags=[f"{USER_TAG_PREFIX}{user_id}", f"{CONVERSATION_TAG_PREFIX}{conversation_id}"],
        )
        if not self.enabled:
            return ctx

        run_id = uuid.uuid4()
        created = await self._safe(
            "create_run",
            name=ROOT_RUN_NAME,
            run_type="chain",
            inputs={"question": question, "user_id": user_id, "conversation_id": conversation_id},
            id=run_id,
            start_time=_now(),
            tags=ctx.tags,
            extra={"metadata": {"correlation_id": ctx.correlation_id}},
            project_name=self.project_name,
        )
        if created:
            ctx.root_run_id = run_id
        return ctx

    async def start_stage(
        self,
        ctx: TraceContext,
        name: str,
        inputs: Dict[str, Any],
        run_type: str = "chain",
    ) -> Optional[uuid.UUID]:
        """Open a child run under the turn's root run."""
        if not (self.enabled and ctx.active):
            return None

        run_id = uuid.uuid4()
        created = await self._safe(
            "create_run",
            name=name,
            run_type=run_type,
            inputs=inputs,
            id=run_id,
            parent_run_id=ctx.root_run_id,
            start_time=_now(),
            tags=ctx.tags,
            extra={"metadata": {"correlation_id": ctx.correlation_id}},
            project_name=self.project_name,
        )
        return run_id if created else None

    async def end_stage(
        self,
        ctx: TraceContext,
        run_id: Optional[uuid.UUID],
        outputs: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        """Close a child run with outputs or an error."""
        if not (self.enabled and run_id):
            return
        await self._safe("update_run", run_id, outputs=outputs or {}, error=error, end_time=_now())

    @asynccontextmanager
    async def stage(
        self,
        ctx: TraceContext,
        name: str,
        inputs: Dict[str, Any],
        run_type: str = "chain",
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Wrap a pipeline stage in a child run.

        The body fills the yielded dict with outputs. Exceptions are recorded
        on the run and re-raised.
        """
        run_id = await self.start_stage(ctx, name, inputs, run_type=run_type)
        outputs: Dict[str, Any] = {}
        try:
            yield outputs
        except (asyncio.CancelledError, GeneratorExit):
            # Closed in the background; the interrupted caller must not await
            self.detach(self.end_stage(ctx, run_id, outputs=outputs, error="cancelled"))
            raise
        except Exception as e:
            await self.end_stage(ctx, run_id, outputs=outputs, error=str(e))
            raise
        await self.end_stage(ctx, run_id, outputs=outputs)

    async def record_stage(
        self,
        ctx: TraceContext,
        name: str,
        inputs: Dict[str, Any],
        started_at: datetime,
        outputs: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        run_type: str = "chain",
    ) -> None:
        """Record an already finished stage as a single completed child run."""
        if not (self.enabled and ctx.active):
            return
        await self._safe(
            "create_run",
            name=name,
            run_type=run_type,
            inputs=inputs,
            outputs=outputs or {},
            error=error,
            id=uuid.uuid4(),
            parent_run_id=ctx.root_run_id,
            start_time=started_at,
            end_time=_now(),
            tags=ctx.tags,
            extra={"metadata": {"correlation_id": ctx.correlation_id}},
            project_name=self.project_name,
        )

    async def end_turn(
        self,
        ctx: TraceContext,
        outputs: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        """Close the root run (success or error)."""
        if not (self.enabled and ctx.active):
            return
        await self._safe("update_run", ctx.root_run_id, outputs=outputs or {}, error=error, end_time=_now())

    def detach(self, coro) -> asyncio.Task:
        """Run a tracker call in the background, keeping a reference until done."""
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for background tracker calls."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _safe(self, method: str, *args: Any, **kwargs: Any) -> bool:
        """Call a (blocking) client method off the event loop, swallowing errors."""
        try:
            await asyncio.to_thread(getattr(self.client, method), *args, **kwargs)
            return True
        except Exception as e:
            logger.warning(
                "LangSmith call failed",
                method=method,
                run_name=kwargs.get("name"),
                error=str(e),
            )
            return False
