"""Exchange clock synchronization.

Signed requests carry a millisecond timestamp that the exchange checks
against its own clock (within ``recvWindow``). ClockSync keeps a single
offset ``exchange_time - local_time`` refreshed on a periodic timer.

The offset is one int attribute: readers never wait on a sync in progress,
they see the last committed value. A failed sync leaves it untouched.
"""
import asyncio
import time
from typing import Awaitable, Callable, Optional

from .errors import GatewayError
from .logging_setup import logger


def local_time_ms() -> int:
    return int(time.time() * 1000)


class ClockSync:
    """Maintain the local-to-exchange clock offset.

    Args:
        fetch_server_time: Async callable returning exchange time in ms
        interval_seconds: Period of the background refresh
        local_clock: Callable returning local time in ms (injectable for tests)
    """

    def __init__(
        self,
        fetch_server_time: Callable[[], Awaitable[int]],
        *,
        interval_seconds: float = 300.0,
        local_clock: Callable[[], int] = local_time_ms,
    ):
        self.fetch_server_time = fetch_server_time
        self.interval = interval_seconds
        self.local_clock = local_clock
        self._offset_ms = 0
        self._synced = False
        self._last_result = False
        self.last_sync_ms: Optional[int] = None
        self._sync_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def offset_ms(self) -> int:
        return self._offset_ms

    @property
    def is_synced(self) -> bool:
        """True once at least one sync has succeeded."""
        return self._synced

    def current_adjusted_time(self) -> int:
        """Local time corrected by the last good offset, in ms."""
        return self.local_clock() + self._offset_ms

    async def sync(self) -> bool:
        """Fetch exchange time and commit a new offset.

        Concurrent callers share one in-flight fetch. Returns True when the
        offset was updated, False when the fetch failed and the previous
        offset was kept.
        """
        if self._sync_lock.locked():
            # Another sync is already running; wait for it instead of refetching.
            async with self._sync_lock:
                return self._last_result

        async with self._sync_lock:
            try:
                server_ms = await self.fetch_server_time()
            except GatewayError as e:
                logger.warning(
                    f"Clock sync failed, keeping previous offset | offset_ms={self._offset_ms} error={e}"
                )
                self._last_result = False
                return False

            local_ms = self.local_clock()
            self._offset_ms = int(server_ms) - local_ms
            self._synced = True
            self.last_sync_ms = local_ms
            self._last_result = True
            logger.info(f"Synced with exchange server time | offset_ms={self._offset_ms}")
            return True

    async def run(self) -> None:
        """Sync now, then every ``interval`` seconds until cancelled."""
        while True:
            try:
                await self.sync()
            except Exception:
                logger.exception(f"Clock sync crashed, keeping previous offset | offset_ms={self._offset_ms}")
            await asyncio.sleep(self.interval)

    def start(self) -> asyncio.Task:
        """Start the background refresh task (idempotent)."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
