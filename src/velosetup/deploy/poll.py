"""Cancellable, timeout-bound polling."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Check = Callable[[], Awaitable[bool]]


@dataclass
class PollResult:
    """Outcome of a poll loop."""

    ready: bool
    attempts: int
    elapsed: float
    last_error: Optional[str] = None


async def poll_until(
    check: Check,
    interval: float,
    timeout: float,
    name: str = "poll",
) -> PollResult:
    """Run ``check`` every ``interval`` seconds until it returns True.

    Returns as soon as a check succeeds. Exceptions raised by ``check`` count
    as "not ready yet". Cancelling the calling task cancels the loop,
    including any in-flight check.

    Args:
        check: Async callable returning True when the condition holds.
        interval: Seconds between attempts.
        timeout: Overall budget in seconds.
        name: Label used in log messages.

    Returns:
        PollResult with ``ready=False`` if the budget ran out.
    """
    if interval <= 0:
        raise ValueError(f"interval must be positive, got {interval}")

    loop = asyncio.get_running_loop()
    started = loop.time()
    deadline = started + timeout
    attempts = 0
    last_error: Optional[str] = None

    while True:
        attempts += 1
        remaining = deadline - loop.time()
        try:
            ok = await asyncio.wait_for(check(), timeout=max(remaining, 0.001))
        except asyncio.TimeoutError:
            ok = False
            last_error = "check timed out"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            ok = False
            last_error = f"{type(e).__name__}: {e}"

        now = loop.time()
        if ok:
            logger.debug(f"[{name}] ready after {attempts} attempts")
            return PollResult(True, attempts, now - started)

        if now >= deadline:
            logger.debug(f"[{name}] gave up after {attempts} attempts: {last_error}")
            return PollResult(False, attempts, now - started, last_error)

        await asyncio.sleep(min(interval, deadline - now))
