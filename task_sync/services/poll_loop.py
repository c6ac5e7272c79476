"""Fixed-interval ticker driving bulk dispatch with cooperative shutdown."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from collections.abc import Awaitable, Callable

from task_sync.core.config import settings
from task_sync.core.logging import get_logger
from task_sync.db.session import async_session_maker, engine
from task_sync.services.dispatcher import StepDispatcher

logger = get_logger(__name__)

TickFn = Callable[[], Awaitable[object]]


class PollLoop:
    """Run one tick immediately, then one per interval; ticks never overlap.

    Setting ``stop_event`` ends the wait between ticks at once. A tick already
    running gets ``grace_seconds`` to finish; past that the loop returns
    without interrupting it and leaves it on ``pending_tick`` for the owner.
    """

    def __init__(
        self,
        run_tick: TickFn,
        *,
        interval_seconds: float | None = None,
        grace_seconds: float | None = None,
    ) -> None:
        self.run_tick = run_tick
        self.interval_seconds = float(interval_seconds or settings.poll_interval_seconds)
        self.grace_seconds = float(
            settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds,
        )
        self.ticks = 0
        self.pending_tick: asyncio.Task[None] | None = None

    async def _tick(self) -> None:
        started = time.monotonic()
        try:
            await self.run_tick()
        except Exception:
            logger.exception("poll_loop.tick.failed", extra={"tick": self.ticks})
        finally:
            self.ticks += 1
            logger.debug(
                "poll_loop.tick.done",
                extra={"tick": self.ticks, "duration_ms": int((time.monotonic() - started) * 1000)},
            )

    async def run(self, stop_event: asyncio.Event) -> int:
        logger.info("poll_loop.started", extra={"interval_seconds": self.interval_seconds})
        while not stop_event.is_set():
            next_due = time.monotonic() + self.interval_seconds
            tick = asyncio.create_task(self._tick())
            stop_wait = asyncio.create_task(stop_event.wait())
            done, _ = await asyncio.wait({tick, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
            if tick not in done:
                logger.info("poll_loop.draining", extra={"grace_seconds": self.grace_seconds})
                finished, _ = await asyncio.wait({tick}, timeout=self.grace_seconds)
                if tick not in finished:
                    self.pending_tick = tick
                    logger.warning("poll_loop.tick.abandoned", extra={"grace_seconds": self.grace_seconds})
                break
            stop_wait.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stop_wait
            remaining = next_due - time.monotonic()
            if remaining > 0:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop_event.wait(), timeout=remaining)
        logger.info("poll_loop.stopped", extra={"ticks": self.ticks})
        return self.ticks


async def run_tick_once() -> dict[str, int]:
    """Open one session, dispatch every eligible step, close the session."""
    async with async_session_maker() as session:
        return await StepDispatcher(session).dispatch_all()


async def run_poll_loop(stop_event: asyncio.Event | None = None) -> int:
    """Serve until SIGINT/SIGTERM, then dispose the engine."""
    stop = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)
    try:
        return await PollLoop(run_tick_once).run(stop)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await engine.dispose()


__all__ = ["PollLoop", "run_poll_loop", "run_tick_once"]
