"""Background event loop that runs refresh cycles on an interval."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from typing import Awaitable, Callable, List, Optional

from .orchestrator import RefreshResult, SnapshotOrchestrator

log = logging.getLogger(__name__)

ShutdownHook = Callable[[], Awaitable[None]]


class RefreshScheduler:
    """Own the asyncio loop thread that all upstream I/O runs on.

    The first cycle starts immediately, then one every ``interval`` seconds.
    Other threads (the web server) submit forced cycles through
    :meth:`run_refresh`; they run on the same loop so cycles never overlap.
    """

    def __init__(
        self,
        orchestrator: SnapshotOrchestrator,
        *,
        interval: float,
        on_shutdown: Optional[List[ShutdownHook]] = None,
        refresh_on_start: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._orchestrator = orchestrator
        self._interval = float(interval)
        self._on_shutdown = list(on_shutdown or [])
        self._refresh_on_start = refresh_on_start
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._task: asyncio.Future | None = None
        self._first_cycle = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def loop(self) -> asyncio.AbstractEventLoop | None:
        return self._loop

    async def _tick(self, force: bool = False) -> RefreshResult | None:
        try:
            return await self._orchestrator.run_refresh_cycle(force=force)
        except Exception:
            log.exception("Refresh cycle crashed")
            return None

    async def _periodic(self) -> None:
        try:
            if self._refresh_on_start:
                await self._tick()
        finally:
            self._first_cycle.set()
        while True:
            await asyncio.sleep(self._interval)
            await self._tick()

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.new_event_loop()
        ready = threading.Event()

        def _run() -> None:
            asyncio.set_event_loop(loop)
            self._task = loop.create_task(self._periodic())
            loop.call_soon(ready.set)
            try:
                loop.run_forever()
            finally:
                with contextlib.suppress(Exception):
                    loop.run_until_complete(loop.shutdown_asyncgens())
                loop.close()

        self._loop = loop
        self._first_cycle.clear()
        self._thread = threading.Thread(target=_run, name="tokenscope-refresh", daemon=True)
        self._thread.start()
        ready.wait()
        log.info("Refresh scheduler started (interval %.0fs)", self._interval)

    def wait_first_cycle(self, timeout: float | None = None) -> bool:
        return self._first_cycle.wait(timeout)

    def run_refresh(self, *, force: bool = True, timeout: float | None = None) -> RefreshResult:
        """Run a cycle on the scheduler loop from another thread and wait for it.

        Exceptions from the cycle propagate to the caller.
        """

        loop = self._loop
        if loop is None or not self.running:
            raise RuntimeError("refresh scheduler is not running")
        future = asyncio.run_coroutine_threadsafe(
            self._orchestrator.run_refresh_cycle(force=force), loop
        )
        return future.result(timeout)

    async def _shutdown(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        for hook in self._on_shutdown:
            try:
                await hook()
            except Exception:
                log.exception("Shutdown hook failed")

    def stop(self, timeout: float = 5.0) -> None:
        loop = self._loop
        thread = self._thread
        if loop is None or thread is None:
            return
        if thread.is_alive():
            future = asyncio.run_coroutine_threadsafe(self._shutdown(), loop)
            with contextlib.suppress(Exception):
                future.result(timeout)
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout)
        self._loop = None
        self._thread = None
        self._task = None
        log.info("Refresh scheduler stopped")


__all__ = ["RefreshScheduler"]
