"""Chatbot usage statistics built from LangSmith run history.

Root ``chatbot_conversation`` runs are listed for an inclusive day range and
aggregated into totals, a per-day time series and the top question clusters.
"""

from __future__ import annotations

import asyncio
import re
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from api.models import ChatbotStats, TimeSeriesPoint, TopQuestion
from api.observability.tracing import ROOT_RUN_NAME, USER_TAG_PREFIX
from libs.analytics.questions import QuestionDeduplicator
from libs.common.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

QUESTION_INPUT_KEYS = ("question", "input", "query")
DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")


class StatsValidationError(ValueError):
    """Raised when the requested date range is missing or malformed."""

    def __init__(self, error: str, details: str):
        super().__init__(f"{error}: {details}")
        self.error = error
        self.details = details


def parse_date_range(start_date: Optional[str], end_date: Optional[str]) -> Tuple[date, date]:
    """Validate an inclusive ``YYYY-MM-DD`` day range."""
    if not start_date or not end_date:
        raise StatsValidationError("Thiếu tham số bắt buộc", "startDate và endDate là bắt buộc")

    if not (DATE_PATTERN.fullmatch(start_date) and DATE_PATTERN.fullmatch(end_date)):
        raise StatsValidationError("Định dạng ngày không hợp lệ", "Ngày phải có định dạng YYYY-MM-DD")

    try:
        start = date.fromisoformat(start_date)
        end = date.fromisoformat(end_date)
    except ValueError:
        raise StatsValidationError("Định dạng ngày không hợp lệ", "Ngày phải có định dạng YYYY-MM-DD")

    if start > end:
        raise StatsValidationError("Khoảng thời gian không hợp lệ", "startDate phải trước endDate")
    return start, end


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    # LangSmith returns naive UTC datetimes
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def _run_question(run: Any) -> Optional[str]:
    inputs = getattr(run, "inputs", None) or {}
    for key in QUESTION_INPUT_KEYS:
        value = inputs.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _run_user(run: Any) -> Optional[str]:
    for tag in getattr(run, "tags", None) or []:
        if tag.startswith(USER_TAG_PREFIX) and len(tag) > len(USER_TAG_PREFIX):
            return tag[len(USER_TAG_PREFIX):]
    return None


def count_exact_questions(runs: List[Any], limit: int = 10) -> List[TopQuestion]:
    """Top questions by exact text, used when the catalog is unavailable."""
    counts: Dict[str, int] = {}
    for run in runs:
        question = _run_question(run)
        if question:
            counts[question] = counts.get(question, 0) + 1
    ranked = sorted(counts.items(), key=lambda x: x[1], reverse=True)[:limit]
    return [TopQuestion(question=question, count=count) for question, count in ranked]


class ChatbotStatsService:
    """
    Aggregates chatbot usage over a day range.

    Usage:
        service = ChatbotStatsService(langsmith_client, project_name="default")
        stats = await service.get_stats("2024-01-01", "2024-01-07")
    """

    def __init__(
        self,
        client=None,
        project_name: str = "default",
        deduplicator: Optional[QuestionDeduplicator] = None,
        top_limit: int = 10,
        deduplicator_factory: Optional[Callable[[], Awaitable[Optional[QuestionDeduplicator]]]] = None,
    ):
        """
        Args:
            client: ``langsmith.Client`` used to list runs
            project_name: LangSmith project holding the chatbot runs
            deduplicator: Question catalog (exact-text counting when None)
            top_limit: Number of top questions to return
            deduplicator_factory: Async callable resolving the catalog on first
                use, so invalid requests never touch Redis
        """
        self.client = client
        self.project_name = project_name
        self.deduplicator = deduplicator
        self.top_limit = top_limit
        self.deduplicator_factory = deduplicator_factory

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        deduplicator_factory: Optional[Callable[[], Awaitable[Optional[QuestionDeduplicator]]]] = None,
    ) -> "ChatbotStatsService":
        settings = settings or get_settings()
        client = None
        if settings.langsmith_api_key:
            from langsmith import Client

            client = Client(api_url=settings.langsmith_endpoint, api_key=settings.langsmith_api_key)
        else:
            logger.warning("CHATBOT_LANGSMITH_API_KEY not set - stats will be unavailable")
        return cls(
            client=client,
            project_name=settings.langsmith_project,
            top_limit=settings.top_questions_limit,
            deduplicator_factory=deduplicator_factory,
        )

    async def get_stats(self, start_date: Optional[str], end_date: Optional[str]) -> ChatbotStats:
        """
        Compute statistics for an inclusive day range.

        Raises:
            StatsValidationError: If the range is missing, unparseable or inverted.
            RuntimeError: If no LangSmith client is configured.
        """
        start, end = parse_date_range(start_date, end_date)
        runs = await self.load_runs(start, end)
        stats = self._aggregate(runs, start, end)
        stats.top_questions = await self._top_questions(runs)
        return stats

    async def load_runs(self, start: date, end: date) -> List[Any]:
        """List root chatbot runs started within the inclusive day range."""
        if self.client is None:
            raise RuntimeError("LangSmith client not configured")

        start_time = datetime.combine(start, dt_time.min, tzinfo=timezone.utc)
        end_time = datetime.combine(end + timedelta(days=1), dt_time.min, tzinfo=timezone.utc)

        runs = await asyncio.to_thread(self._list_runs, start_time, end_time)
        logger.info(
            "Chatbot runs loaded",
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            runs=len(runs),
        )
        return runs

    def _list_runs(self, start_time: datetime, end_time: datetime) -> List[Any]:
        runs = []
        for run in self.client.list_runs(
            project_name=self.project_name,
            is_root=True,
            run_type="chain",
            start_time=start_time,
            filter=f'and(eq(name, "{ROOT_RUN_NAME}"), lt(start_time, "{end_time.isoformat()}"))',
        ):
            started = _as_utc(getattr(run, "start_time", None))
            if getattr(run, "name", None) != ROOT_RUN_NAME or started is None:
                continue
            if start_time <= started < end_time:
                runs.append(run)
        return runs

    def _aggregate(self, runs: List[Any], start: date, end: date) -> ChatbotStats:
        days: Dict[str, Dict[str, float]] = {}
        current = start
        while current <= end:
            days[current.isoformat()] = {"queries": 0, "total_time": 0.0, "timed": 0}
            current += timedelta(days=1)

        users = set()
        successful = 0
        total_time = 0.0
        timed = 0

        for run in runs:
            started = _as_utc(run.start_time)
            day = days.get(started.date().isoformat())
            if day is not None:
                day["queries"] += 1

            if not getattr(run, "error", None):
                successful += 1

            user_id = _run_user(run)
            if user_id:
                users.add(user_id)

            ended = _as_utc(getattr(run, "end_time", None))
            if ended is not None:
                elapsed = max((ended - started).total_seconds(), 0.0)
                total_time += elapsed
                timed += 1
                if day is not None:
                    day["total_time"] += elapsed
                    day["timed"] += 1

        total = len(runs)
        return ChatbotStats(
            total_queries=total,
            average_response_time=total_time / timed if timed else 0.0,
            success_rate=(successful / total) * 100 if total else 0.0,
            active_users=len(users),
            time_series_data=[
                TimeSeriesPoint(
                    date=day,
                    queries=int(data["queries"]),
                    avg_response_time=data["total_time"] / data["timed"] if data["timed"] else 0.0,
                )
                for day, data in days.items()
            ],
        )

    @staticmethod
    def question_pairs(runs: List[Any]) -> List[Tuple[str, str]]:
        """(run_id, question) pairs for the runs that carry a question."""
        pairs = []
        for run in runs:
            question = _run_question(run)
            if question:
                pairs.append((str(run.id), question))
        return pairs

    async def _top_questions(self, runs: List[Any]) -> List[TopQuestion]:
        if self.deduplicator is None and self.deduplicator_factory is not None:
            self.deduplicator = await self.deduplicator_factory()
        if self.deduplicator is None:
            return count_exact_questions(runs, self.top_limit)

        try:
            await self.deduplicator.process_runs(self.question_pairs(runs))
            clusters = await self.deduplicator.top_questions(self.top_limit)
        except Exception as e:
            logger.warning("Question catalog unavailable, counting exact text", error=str(e))
            return count_exact_questions(runs, self.top_limit)

        return [TopQuestion(question=c.question, count=c.count) for c in clusters]
