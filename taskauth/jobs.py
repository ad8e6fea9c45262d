"""
TaskAuth - Background Sweeps

Periodic cleanup of expired OAuth states, expired and idle sessions, and
idle rate-limit buckets. Each sweep runs as its own asyncio task started in the
app lifespan and cancelled on shutdown.
"""

import asyncio
from datetime import timedelta
from functools import partial
from typing import Callable, List

from fastapi import FastAPI

from taskauth.logging import get_logger


logger = get_logger(__name__)


async def run_periodic(name: str, interval: float, func: Callable[[], int]) -> None:
    """
    Call func every interval seconds until cancelled.

    func runs in a worker thread so blocking store sweeps never stall the
    event loop. Failures are logged and the loop keeps going.
    """
    logger.info("sweeper_started", sweeper=name, interval=interval)
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(func)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("sweeper_failed", sweeper=name)
            continue
        if removed:
            logger.info("sweeper_ran", sweeper=name, removed=removed)


def start_sweepers(app: FastAPI) -> List[asyncio.Task]:
    """Launch the state, session and rate-limit sweeps for an app."""
    config = app.state.settings
    service = app.state.auth_service
    idle_for = timedelta(hours=config.SESSION_IDLE_TIMEOUT_HOURS)
    jobs = [
        ("oauth_states", config.STATE_SWEEP_INTERVAL_SECONDS, service.states.delete_expired),
        ("sessions", config.SESSION_SWEEP_INTERVAL_SECONDS, service.sessions.delete_expired),
        (
            "idle_sessions",
            config.SESSION_SWEEP_INTERVAL_SECONDS,
            partial(service.sessions.delete_inactive, idle_for),
        ),
        ("rate_limit", config.RATE_LIMIT_SWEEP_INTERVAL_SECONDS, app.state.rate_limiter.sweep),
    ]
    return [
        asyncio.create_task(run_periodic(name, interval, func), name=f"sweep:{name}")
        for name, interval, func in jobs
    ]


async def stop_sweepers(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
