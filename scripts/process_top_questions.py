#!/usr/bin/env python3
"""
Feed historical chatbot runs into the top-question catalog.

Lists root chatbot runs from LangSmith for a day range, merges their questions
into the Redis-backed catalog (each run is counted at most once, so re-running
over the same range is safe) and prints the current top questions.

Usage:
    python scripts/process_top_questions.py --start-date 2024-01-01 --end-date 2024-01-31
    python scripts/process_top_questions.py --days 7 --limit 20
"""

import argparse
import asyncio
import sys
from datetime import date, timedelta

import structlog

from api.analytics import ChatbotStatsService, StatsValidationError, parse_date_range
from libs.analytics.questions import QuestionDeduplicator
from libs.caching.redis_client import close_redis_client, get_redis_client
from libs.common.settings import get_settings
from libs.vectors.embeddings import EmbeddingClient

logger = structlog.get_logger(__name__)


def resolve_range(args: argparse.Namespace):
    if args.start_date or args.end_date:
        return parse_date_range(args.start_date, args.end_date)
    end = date.today()
    return end - timedelta(days=args.days - 1), end


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    start, end = resolve_range(args)

    redis_client = await get_redis_client()
    if redis_client is None:
        logger.error("Redis unavailable, cannot update question catalog")
        return 1

    try:
        deduplicator = QuestionDeduplicator(
            redis_client,
            EmbeddingClient.from_settings(settings),
            threshold=args.threshold if args.threshold is not None else settings.question_merge_threshold,
        )
        service = ChatbotStatsService.from_settings(settings)
        runs = await service.load_runs(start, end)
        summary = await deduplicator.process_runs(service.question_pairs(runs))
        top = await deduplicator.top_questions(args.limit)
    finally:
        await close_redis_client()

    print(f"\nRuns {start.isoformat()} -> {end.isoformat()}: {len(runs)}")
    print(f"Processed: {summary['processed']}  Skipped: {summary['skipped']}  Failed: {summary['failed']}\n")
    print("Top questions:")
    print("-" * 40)
    for i, cluster in enumerate(top, 1):
        print(f"{i:2}. [{cluster.count:4}x] {cluster.question}")

    return 0 if summary["failed"] == 0 else 2


def main():
    parser = argparse.ArgumentParser(description="Merge chatbot questions into the top-question catalog")
    parser.add_argument("--start-date", type=str, default=None, help="First day (YYYY-MM-DD)")
    parser.add_argument("--end-date", type=str, default=None, help="Last day, inclusive (YYYY-MM-DD)")
    parser.add_argument("--days", type=int, default=1, help="Days back from today when no dates are given")
    parser.add_argument("--limit", type=int, default=10, help="Number of top questions to print")
    parser.add_argument("--threshold", type=float, default=None, help="Override the merge threshold")

    args = parser.parse_args()
    if args.days < 1:
        parser.error("--days must be at least 1")

    try:
        sys.exit(asyncio.run(run(args)))
    except StatsValidationError as e:
        parser.error(f"{e.error}: {e.details}")
    except Exception as e:
        logger.error("Top question processing failed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
