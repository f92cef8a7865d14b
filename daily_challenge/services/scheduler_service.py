"""Background scheduler for the daily challenge cycle.

Runs as an asyncio task (``daily-challenge scheduler``). Each cycle closes
yesterday's challenges, picks winners for ended challenges by likes, and
makes sure today's challenge exists. Each step commits in its own session so
one failing step does not undo the others.

After a cycle the loop sleeps until the next midnight of the reference
timezone, capped at ``scheduler_interval_hours``, so a new day's challenge is
created as the day starts no matter when the process was launched.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from daily_challenge.clock import ReferenceClock
from daily_challenge.config import ChallengeSettings, get_settings
from daily_challenge.database import get_session_factory
from daily_challenge.logging_config import get_logger, step_context
from daily_challenge.schemas import ChallengeResponse
from daily_challenge.services.challenge_service import (
    ChallengeLifecycleService,
    build_lifecycle_service,
)
from daily_challenge.services.text_generation import GeminiTextGenerator, TextGenerator

logger = get_logger(__name__)


def seconds_until_next_day(clock: ReferenceClock, cap_seconds: float | None = None) -> float:
    """Seconds from ``clock.now()`` to the next reference-timezone midnight."""
    next_start = clock.day_start(clock.today() + timedelta(days=1))
    wait = (next_start - clock.now()).total_seconds()
    if cap_seconds is not None:
        wait = min(wait, cap_seconds)
    return max(wait, 0.0)


async def _run_step(
    name: str,
    session_factory: async_sessionmaker[AsyncSession],
    step: Callable[[ChallengeLifecycleService], Awaitable[Any]],
    settings: ChallengeSettings,
    text_generator: TextGenerator,
    clock: ReferenceClock | None,
) -> Any:
    with step_context(name):
        async with session_factory() as session:
            service = build_lifecycle_service(
                session, settings=settings, text_generator=text_generator, clock=clock
            )
            try:
                result = await step(service)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return result


async def run_daily_cycle(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: ChallengeSettings | None = None,
    text_generator: TextGenerator | None = None,
    clock: ReferenceClock | None = None,
) -> dict:
    """Single cycle: end yesterday, auto-select winners, ensure today.

    Returns:
        ``{"ended": [...], "winners": [...], "today": {...} | None,
        "errors": {step: message}}``.
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    owns_generator = text_generator is None
    if text_generator is None:
        text_generator = GeminiTextGenerator(settings)

    report: dict[str, Any] = {"ended": [], "winners": [], "today": None, "errors": {}}

    async def end_yesterday(service):
        return await service.end_yesterdays_challenges()

    async def select_winners(service):
        return await service.auto_select_winners()

    async def ensure_today(service):
        challenge = await service.ensure_todays_challenge()
        return ChallengeResponse.from_challenge(challenge)

    steps = [
        ("ended", end_yesterday),
        ("winners", select_winners),
        ("today", ensure_today),
    ]
    try:
        for key, step in steps:
            try:
                result = await _run_step(
                    key, session_factory, step, settings, text_generator, clock
                )
            except Exception as e:
                logger.exception("daily_cycle_step_failed", step=key)
                report["errors"][key] = str(e)
                continue
            if isinstance(result, list):
                report[key] = [item.model_dump(mode="json") for item in result]
            else:
                report[key] = result.model_dump(mode="json")
    finally:
        if owns_generator and isinstance(text_generator, GeminiTextGenerator):
            await text_generator.close()

    logger.info(
        "daily_cycle_complete",
        ended=len(report["ended"]),
        winners=len(report["winners"]),
        today_created=report["today"] is not None,
        failed_steps=sorted(report["errors"]),
    )
    return report


async def scheduler_loop(
    stop_event: asyncio.Event,
    settings: ChallengeSettings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    text_generator: TextGenerator | None = None,
    clock: ReferenceClock | None = None,
) -> None:
    """Main scheduler loop. Runs until stop_event is set."""
    settings = settings or get_settings()
    clock = clock or ReferenceClock(settings.reference_timezone)
    interval = settings.scheduler_interval_hours * 3600
    logger.info(
        "scheduler_started",
        interval_hours=settings.scheduler_interval_hours,
        timezone=str(clock.tz),
    )

    while not stop_event.is_set():
        try:
            await run_daily_cycle(
                session_factory=session_factory,
                settings=settings,
                text_generator=text_generator,
                clock=clock,
            )
        except Exception:
            logger.exception("scheduler_cycle_error")

        # Wait for the next reference midnight or until stopped
        wait = seconds_until_next_day(clock, cap_seconds=interval)
        logger.debug("scheduler_sleeping", seconds=round(wait, 1))
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=wait)
            break
        except asyncio.TimeoutError:
            pass

    logger.info("scheduler_stopped")
