"""Wake Dispatcher: Starts a new generation of runs on every resume event.

Each wake event cancels the previous generation's runs (terminating any
child still running under them) and starts one SupervisedRun per file in
the exes dir. Every wake re-runs every file, including ones that already
succeeded after the previous wake.
"""

from __future__ import annotations

import asyncio
import os
from typing import Optional

from waked.config import Settings, get_settings
from waked.logging_config import get_logger
from waked.supervisor.capture import LogSink
from waked.supervisor.lock_state import LockStateOracle
from waked.supervisor.runner import ExecutableDescriptor, LockOracle, RunOutcome, SupervisedRun

logger = get_logger(__name__)

STOP_WAIT_SLACK = 1.0   # seconds beyond the kill grace to wait for a superseded generation


class Generation:
    """Cancellation scope for the runs started by one wake event."""

    def __init__(self, number: int) -> None:
        self.number = number
        self.runs: list[SupervisedRun] = []
        self._tasks: set[asyncio.Task] = set()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    @property
    def tasks(self) -> frozenset[asyncio.Task]:
        return frozenset(self._tasks)

    def start(self, run: SupervisedRun) -> asyncio.Task:
        if self._cancelled:
            raise RuntimeError(f"generation {self.number} is cancelled")
        task = asyncio.create_task(self._guard(run), name=f"run:{self.number}:{run.exe_path}")
        self.runs.append(run)
        self._tasks.add(task)
        return task

    def cancel(self, reason: str) -> None:
        """Request termination of every run. Does not wait."""
        if self._cancelled:
            return
        self._cancelled = True
        for task in self._tasks:
            task.cancel(reason)
        logger.info("generation_cancelled", generation=self.number, reason=reason, active=self.active)

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for every run to finish. Returns False on timeout."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        return not pending

    @staticmethod
    async def _guard(run: SupervisedRun) -> Optional[RunOutcome]:
        try:
            return await run.run()
        except Exception as exc:
            logger.exception("run_crashed", exe=run.exe_path, error=str(exc))
            return None


class WakeDispatcher:
    """Reacts to resume events. Safe to trigger repeatedly."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        oracle: Optional[LockOracle] = None,
        sink: Optional[LogSink] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._exes_dir = self._settings.waked_exes_dir
        self._marker = self._settings.waked_unlock_marker
        self._oracle = oracle or LockStateOracle(self._settings)
        self._sink = sink
        self._lock = asyncio.Lock()
        self._generation: Optional[Generation] = None
        self._counter = 0
        self._closed = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def generation(self) -> Optional[Generation]:
        return self._generation

    @property
    def closed(self) -> bool:
        return self._closed

    def bind_loop(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Remember the loop that notify_wake() schedules onto."""
        self._loop = loop or asyncio.get_running_loop()

    def notify_wake(self) -> Optional[asyncio.Future]:
        """Thread-safe entry point for host callbacks.

        Schedules on_wake() on the bound loop and returns its future.
        """
        if self._loop is None:
            raise RuntimeError("dispatcher is not bound to an event loop")
        return asyncio.run_coroutine_threadsafe(self.on_wake(), self._loop)

    async def on_wake(self) -> Optional[Generation]:
        """Handle one resume event. Returns the new generation, or None if dropped."""
        async with self._lock:
            if self._closed:
                logger.info("wake_ignored_closed")
                return None

            try:
                descriptors = await asyncio.to_thread(self.list_executables)
            except OSError as exc:
                logger.error("exes_dir_unreadable", exes_dir=self._exes_dir, error=str(exc))
                return None

            previous = self._generation
            if previous is not None:
                previous.cancel("received new wake event")
                if not await previous.wait(self._settings.waked_kill_grace + STOP_WAIT_SLACK):
                    logger.warning(
                        "generation_stop_timeout",
                        generation=previous.number, active=previous.active,
                    )

            self._counter += 1
            generation = Generation(self._counter)
            self._generation = generation

            for descriptor in descriptors:
                generation.start(self._make_run(descriptor, generation.number))

            logger.info(
                "wake_dispatched",
                generation=generation.number, exes_dir=self._exes_dir, executables=len(descriptors),
            )
            return generation

    def list_executables(self) -> list[ExecutableDescriptor]:
        """Non-recursive listing of the exes dir. Directories are skipped."""
        descriptors = []
        with os.scandir(self._exes_dir) as entries:
            for entry in entries:
                try:
                    if entry.is_dir():
                        continue
                except OSError:
                    # Broken entry; let the run report it as vanished or failed.
                    pass
                descriptors.append(ExecutableDescriptor.from_path(entry.path, self._marker))
        return sorted(descriptors, key=lambda d: d.path)

    async def close(self) -> None:
        """Cancel the current generation and refuse further wake events."""
        async with self._lock:
            self._closed = True
            if self._generation is not None:
                self._generation.cancel("supervisor shutting down")
                await self._generation.wait(self._settings.waked_kill_grace + STOP_WAIT_SLACK)

    def _make_run(self, descriptor: ExecutableDescriptor, generation: int) -> SupervisedRun:
        return SupervisedRun(
            descriptor,
            generation=generation,
            oracle=self._oracle,
            sink=self._sink,
            settings=self._settings,
        )

