"""Background sweeper for expired credentials and abandoned carts.

One asyncio task per process. Each tick it:
- deletes expired access/refresh tokens and stale one-time codes
- deletes stale cart rows, at most once per cart interval, while the local
  time of day falls inside the cart window (00:00-06:00 by default)

A failing sweep is logged and re-raised, which ends the task. ``failure``
keeps the exception so the health check can report it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Tuple

from fruitables.logging import get_logger

if TYPE_CHECKING:
    from fruitables.storage.memory import MemoryStore
    from fruitables.storage.postgres import PostgresStore

logger = get_logger(__name__)

DEFAULT_TOKEN_INTERVAL_SECONDS = 1.0
DEFAULT_CART_INTERVAL_SECONDS = 60.0
DEFAULT_CART_WINDOW = (0, 6)


def local_now() -> datetime:
    return datetime.now().astimezone()


class ExpirySweeper:
    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        *,
        token_interval: float = DEFAULT_TOKEN_INTERVAL_SECONDS,
        cart_interval: float = DEFAULT_CART_INTERVAL_SECONDS,
        cart_window: Tuple[int, int] = DEFAULT_CART_WINDOW,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.store = store
        self.token_interval = token_interval
        self.cart_interval = cart_interval
        self.cart_window = cart_window
        self._clock = clock or local_now
        self._sleep = sleep or asyncio.sleep
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_cart_sweep: Optional[datetime] = None
        self.failure: Optional[BaseException] = None
        self.token_sweeps = 0
        self.cart_sweeps = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background task."""
        if self._running:
            logger.warning("expiry_sweeper_already_running")
            return

        self._running = True
        self.failure = None
        self._task = asyncio.create_task(self.run())
        logger.info(
            "expiry_sweeper_started",
            token_interval=self.token_interval,
            cart_interval=self.cart_interval,
            cart_window=list(self.cart_window),
        )

    async def stop(self) -> None:
        """Cancel the task and wait for it to finish.

        A sweep failure that already ended the task is raised here.
        """
        self._running = False
        if self._task:
            task, self._task = self._task, None
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("expiry_sweeper_stopped")

    def in_cart_window(self, now: datetime) -> bool:
        start_hour, end_hour = self.cart_window
        return start_hour <= now.hour < end_hour

    def _cart_due(self, now: datetime) -> bool:
        if self._last_cart_sweep is None:
            return True
        return (now - self._last_cart_sweep).total_seconds() >= self.cart_interval

    async def run_once(self) -> None:
        """Perform a single tick of both sweeps."""
        now = self._clock()
        removed = await self.store.sweep_expired_tokens(now)
        self.token_sweeps += 1
        if removed:
            logger.info("expired_tokens_swept", removed=removed)
        if self.in_cart_window(now) and self._cart_due(now):
            carts = await self.store.sweep_stale_carts(now)
            self._last_cart_sweep = now
            self.cart_sweeps += 1
            logger.info("stale_carts_swept", removed=carts)

    async def run(self, *, max_iterations: Optional[int] = None) -> None:
        """Loop until stopped, cancelled, or ``max_iterations`` ticks have run."""
        self._running = True
        iterations = 0
        try:
            while self._running:
                if max_iterations is not None and iterations >= max_iterations:
                    break
                await self._sleep(self.token_interval)
                await self.run_once()
                iterations += 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failure = exc
            logger.error(
                "expiry_sweep_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        finally:
            self._running = False
