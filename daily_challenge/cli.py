"""Command line entry point for the daily challenge service.

Usage:
    daily-challenge init-db
    daily-challenge ensure-today
    daily-challenge end-yesterday
    daily-challenge select-winners
    daily-challenge select-winner CHALLENGE_ID [--method likes|random|ai_scoring]
    daily-challenge select-winner CHALLENGE_ID --user USER_ID --blog BLOG_ID
    daily-challenge participate CHALLENGE_ID USER_ID BLOG_ID
    daily-challenge summary CHALLENGE_ID
    daily-challenge stats
    daily-challenge leaderboard [--timeframe week|month|all] [--limit N]
    daily-challenge winners [--timeframe week|month|all] [--limit N]
    daily-challenge ai-status
    daily-challenge scheduler

Results are printed to stdout as JSON; logs go to stderr.
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from daily_challenge.config import get_settings
from daily_challenge.constants import SelectionMethod, Timeframe
from daily_challenge.database import close_db, create_schema, get_db_session, init_db
from daily_challenge.exceptions import ChallengeServiceError, error_payload
from daily_challenge.logging_config import (
    bind_job_context,
    clear_job_context,
    configure_logging,
    get_logger,
)
from daily_challenge.models import Challenge
from daily_challenge.schemas import ChallengeResponse
from daily_challenge.services.challenge_service import (
    ChallengeLifecycleService,
    build_lifecycle_service,
)
from daily_challenge.services.generator import ChallengeGenerator
from daily_challenge.services.scheduler_service import scheduler_loop
from daily_challenge.services.text_generation import GeminiTextGenerator

logger = get_logger(__name__)

# Commands that change the store and must commit
WRITE_COMMANDS = {
    "ensure-today",
    "end-yesterday",
    "select-winners",
    "select-winner",
    "participate",
}


def to_jsonable(value: Any) -> Any:
    if isinstance(value, Challenge):
        return ChallengeResponse.from_challenge(value).model_dump(mode="json")
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [to_jsonable(item) for item in value]
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="daily-challenge",
        description="Daily blog writing challenge lifecycle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  daily-challenge init-db                       Create missing tables
  daily-challenge ensure-today                  Generate today's challenge if needed
  daily-challenge leaderboard --timeframe week  Top participants this week
  daily-challenge scheduler                     Run the daily cycle until interrupted
        """,
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        default=None,
        help="Logging level (default: from CHALLENGE_LOG_LEVEL)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the challenge tables")
    sub.add_parser("ensure-today", help="Return today's challenge, creating it if needed")
    sub.add_parser("end-yesterday", help="End yesterday's active challenges")
    sub.add_parser("select-winners", help="Select winners for ended challenges by likes")

    select = sub.add_parser("select-winner", help="Select the winner of one challenge")
    select.add_argument("challenge_id", type=UUID)
    select.add_argument(
        "--method",
        default=SelectionMethod.likes.value,
        choices=[m.value for m in SelectionMethod if m is not SelectionMethod.manual],
    )
    select.add_argument("--user", type=UUID, help="Manual selection: winning user id")
    select.add_argument("--blog", type=UUID, help="Manual selection: winning blog id")

    participate = sub.add_parser("participate", help="Record a blog submission")
    participate.add_argument("challenge_id", type=UUID)
    participate.add_argument("user_id", type=UUID)
    participate.add_argument("blog_id", type=UUID)

    summary = sub.add_parser("summary", help="Participant count and winner of one challenge")
    summary.add_argument("challenge_id", type=UUID)

    sub.add_parser("stats", help="Aggregate challenge statistics")

    for name, help_text in (
        ("leaderboard", "Users ranked by completed challenges"),
        ("winners", "Most recent challenge winners"),
    ):
        board = sub.add_parser(name, help=help_text)
        board.add_argument(
            "--timeframe",
            default=Timeframe.all.value,
            choices=[t.value for t in Timeframe],
        )
        board.add_argument("--limit", type=int, default=10)

    sub.add_parser("ai-status", help="Check that the generative text service answers")
    sub.add_parser("scheduler", help="Run the daily cycle every scheduler interval")
    return parser


async def run_command(service: ChallengeLifecycleService, args: argparse.Namespace) -> Any:
    """Dispatch one store-backed command to the lifecycle service."""
    command = args.command
    if command == "ensure-today":
        return await service.ensure_todays_challenge()
    if command == "end-yesterday":
        return await service.end_yesterdays_challenges()
    if command == "select-winners":
        return await service.auto_select_winners()
    if command == "select-winner":
        if args.user is not None:
            return await service.select_winner_manually(args.challenge_id, args.user, args.blog)
        return await service.select_winner(args.challenge_id, args.method)
    if command == "participate":
        return await service.add_participation(args.challenge_id, args.user_id, args.blog_id)
    if command == "summary":
        return await service.get_challenge_summary(args.challenge_id)
    if command == "stats":
        return await service.get_challenge_stats()
    if command == "leaderboard":
        return await service.get_leaderboard(args.timeframe, args.limit)
    if command == "winners":
        return await service.get_challenge_winners(args.timeframe, args.limit)
    raise ValueError(f"Unknown command: {command}")


async def _run_scheduler() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still cancels
            pass
    await scheduler_loop(stop_event)


async def _main(args: argparse.Namespace) -> Any:
    settings = get_settings()

    if args.command == "ai-status":
        text_generator = GeminiTextGenerator(settings)
        try:
            generator = ChallengeGenerator(
                text_generator, timeout_seconds=settings.generation_timeout_seconds
            )
            return await generator.check_ai_status()
        finally:
            await text_generator.close()

    try:
        if args.command == "init-db":
            await init_db()
            await create_schema()
            return {"status": "ok"}
        if args.command == "scheduler":
            await _run_scheduler()
            return None

        text_generator = GeminiTextGenerator(settings)
        try:
            async with get_db_session() as session:
                service = build_lifecycle_service(
                    session, settings=settings, text_generator=text_generator
                )
                result = await run_command(service, args)
                payload = to_jsonable(result)
                if args.command in WRITE_COMMANDS:
                    await session.commit()
                return payload
        finally:
            await text_generator.close()
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "select-winner" and (args.user is None) != (args.blog is None):
        parser.error("select-winner: --user and --blog must be given together")
    settings = get_settings()
    configure_logging(
        level=args.log_level or settings.log_level,
        json_format=settings.log_format == "json",
    )

    bind_job_context(args.command)
    try:
        result = asyncio.run(_main(args))
    except ChallengeServiceError as e:
        logger.warning("command_failed", error_type=e.error_type, detail=e.message)
        print(json.dumps({"error": error_payload(e)}, indent=2))
        return 1
    finally:
        clear_job_context()

    if result is not None:
        print(json.dumps(to_jsonable(result), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
