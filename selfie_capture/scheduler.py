"""
Repeating probe task.

Runs ``probe()`` after an adaptive delay, forever, until stopped.  Each run
of the loop owns a :class:`CancellationToken`; stopping cancels the token and
interrupts a pending sleep.  A probe that is already executing is shielded
from cancellation so its camera request can finish and release the session's
in-flight marker.

The sleep function is injectable so tests can step the loop without real
wall-clock waits.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class CancellationToken:
    """One-shot flag shared between a scheduler run and its owner."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ProbeScheduler:
    """
    Parameters
    ----------
    probe:
        Coroutine function executed on every tick.  Must not raise; the
        scheduler logs and keeps going if it does.
    next_delay:
        Returns the delay in seconds before the next tick.  Consulted after
        every tick so the interval can adapt to the last result.
    sleep:
        Awaitable sleep, ``asyncio.sleep`` by default.
    """

    def __init__(
        self,
        probe: Callable[[], Awaitable[None]],
        next_delay: Callable[[], float],
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._probe = probe
        self._next_delay = next_delay
        self._sleep = sleep

        self._token: Optional[CancellationToken] = None
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._token is not None and not self._token.cancelled

    def start(self, delay: Optional[float] = None) -> None:
        """
        (Re)start the loop.  The first tick fires after *delay* seconds, or
        after ``next_delay()`` when *delay* is None.  Must be called from a
        running event loop.
        """
        self.stop()
        token = CancellationToken()
        self._token = token
        self._task = asyncio.get_running_loop().create_task(self._run(token, delay))

    def stop(self) -> None:
        """Cancel the current run and any pending timer.  Idempotent."""
        if self._token is not None:
            self._token.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self, token: CancellationToken, delay: Optional[float]) -> None:
        try:
            while not token.cancelled:
                await self._sleep(self._next_delay() if delay is None else delay)
                delay = None
                if token.cancelled:
                    break
                self.ticks += 1
                try:
                    await asyncio.shield(self._probe())
                except asyncio.CancelledError:
                    raise
                except Exception as exc:                     # noqa: BLE001
                    logger.warning("Probe raised unexpectedly: %s", exc)
        except asyncio.CancelledError:
            logger.debug("Probe scheduler stopped.")
            raise
