"""Retry Supervisor: The per-executable run loop of one generation.

A SupervisedRun moves through::

    gating -> running -> evaluating -> retrying -> gating ...
                                    \\-> stopped

It stops when the executable exits zero, when the file disappears from
disk, or when its task is cancelled because a newer wake event superseded
its generation. Any other failure is retried after a fixed delay, forever.
"""

from __future__ import annotations

import asyncio
import os
import signal
import subprocess
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Optional, Protocol

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_never

from waked.config import DEFAULT_UNLOCK_MARKER, Settings, get_settings
from waked.errors import (
    AttemptFailedError,
    ExecutableVanishedError,
    LockStateError,
    ScreenLockedError,
)
from waked.logging_config import get_logger
from waked.supervisor.capture import LogSink, OutputCapture, log_exe_line
from waked.supervisor.lock_state import LockStateOracle

logger = get_logger(__name__)

PUMP_DRAIN_TIMEOUT = 1.0   # seconds to wait for pipes after the child exits


class LockOracle(Protocol):
    async def is_locked(self) -> bool: ...


class RunState(StrEnum):
    GATING = "gating"
    RUNNING = "running"
    EVALUATING = "evaluating"
    RETRYING = "retrying"
    STOPPED = "stopped"


class OutcomeKind(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    GATE_BLOCKED = "gate_blocked"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ExecutableDescriptor:
    """An executable found in the exes dir. Immutable."""

    path: str
    requires_unlock: bool = False

    @classmethod
    def from_path(cls, path: str | Path, marker: str = DEFAULT_UNLOCK_MARKER) -> ExecutableDescriptor:
        path = os.path.abspath(path)
        return cls(path=path, requires_unlock=marker in os.path.basename(path))

    @property
    def name(self) -> str:
        return os.path.basename(self.path)


@dataclass(frozen=True)
class RunOutcome:
    """Result of one pass through the loop."""

    kind: OutcomeKind
    reason: str = ""
    until: Optional[float] = None   # loop time at which a gate block is re-checked


class SupervisedRun:
    """Keeps one executable running until it succeeds, vanishes, or is cancelled."""

    def __init__(
        self,
        descriptor: ExecutableDescriptor,
        generation: int = 0,
        oracle: Optional[LockOracle] = None,
        sink: Optional[LogSink] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self.descriptor = descriptor
        self.generation = generation
        self.attempts = 0
        self.state = RunState.GATING
        self.last_outcome: Optional[RunOutcome] = None
        self._oracle = oracle or LockStateOracle(settings)
        self._sink = sink or log_exe_line
        self._exec_timeout = settings.waked_exec_timeout
        self._retry_delay = settings.waked_retry_delay
        self._locked_retry_delay = settings.waked_locked_retry_delay
        self._kill_grace = settings.waked_kill_grace

    @property
    def exe_path(self) -> str:
        return self.descriptor.path

    async def run(self) -> RunOutcome:
        """Loop until a terminal outcome. Re-raises CancelledError."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type((AttemptFailedError, ScreenLockedError)),
            wait=self._backoff,
            stop=stop_never,
            before_sleep=self._before_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._attempt()
        except ExecutableVanishedError as exc:
            self.state = RunState.STOPPED
            self.last_outcome = RunOutcome(OutcomeKind.FAILED, str(exc))
            logger.warning(
                "executable_vanished",
                exe=self.exe_path, generation=self.generation,
                attempts=self.attempts, error=str(exc.cause),
            )
            return self.last_outcome
        except asyncio.CancelledError:
            self.state = RunState.STOPPED
            self.last_outcome = RunOutcome(OutcomeKind.CANCELLED, "superseded by a newer wake event")
            logger.info("run_cancelled", exe=self.exe_path, generation=self.generation, attempts=self.attempts)
            raise

        self.state = RunState.STOPPED
        self.last_outcome = RunOutcome(OutcomeKind.SUCCESS)
        logger.info("exe_succeeded", exe=self.exe_path, generation=self.generation, attempts=self.attempts)
        return self.last_outcome

    # ── One pass ──────────────────────────────────────────────────────

    async def _attempt(self) -> None:
        self.state = RunState.GATING
        if self.descriptor.requires_unlock:
            await self._check_gate()

        self.state = RunState.RUNNING
        try:
            os.stat(self.exe_path)
        except OSError as exc:
            raise ExecutableVanishedError(self.exe_path, exc) from exc

        self.attempts += 1
        try:
            await self._exec_once()
        finally:
            self.state = RunState.EVALUATING

    async def _check_gate(self) -> None:
        try:
            locked = await self._oracle.is_locked()
        except LockStateError as exc:
            logger.warning("lock_state_unknown", exe=self.exe_path, error=str(exc))
            return

        if locked:
            until = asyncio.get_running_loop().time() + self._locked_retry_delay
            self.last_outcome = RunOutcome(OutcomeKind.GATE_BLOCKED, "screen is locked", until=until)
            raise ScreenLockedError(self.exe_path)

    async def _exec_once(self) -> None:
        """Spawn the executable once and wait for it under the exec timeout."""
        stdout = OutputCapture(self.exe_path, self._sink, "stdout")
        stderr = OutputCapture(self.exe_path, self._sink, "stderr")
        try:
            spawn = asyncio.create_task(asyncio.create_subprocess_exec(
                self.exe_path,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            ))
            try:
                proc = await asyncio.shield(spawn)
            except OSError as exc:
                raise AttemptFailedError(self.exe_path, f"exec failed - {exc}") from exc
            except asyncio.CancelledError:
                # A child that did start is stopped with its whole group.
                await asyncio.wait([spawn])
                if not spawn.cancelled() and spawn.exception() is None:
                    await self._terminate(spawn.result(), cancelled=True)
                raise

            logger.info(
                "exe_started",
                exe=self.exe_path, pid=proc.pid,
                generation=self.generation, attempt=self.attempts,
            )
            pumps = [
                asyncio.create_task(stdout.pump(proc.stdout)),
                asyncio.create_task(stderr.pump(proc.stderr)),
            ]
            try:
                async with asyncio.timeout(self._exec_timeout):
                    returncode = await proc.wait()
            except TimeoutError:
                await self._terminate(proc)
                raise AttemptFailedError(
                    self.exe_path,
                    f"timed-out waiting for child process to exit after {self._exec_timeout:g}s",
                    returncode=proc.returncode,
                    timed_out=True,
                ) from None
            except asyncio.CancelledError:
                await self._terminate(proc, cancelled=True)
                raise
            finally:
                await self._drain(pumps)
        finally:
            await stdout.close()
            await stderr.close()

        if returncode != 0:
            raise AttemptFailedError(self.exe_path, f"exit status {returncode}", returncode=returncode)

    # ── Child termination ─────────────────────────────────────────────

    async def _terminate(self, proc: asyncio.subprocess.Process, cancelled: bool = False) -> None:
        """SIGTERM the child's process group, SIGKILL it after the grace period.

        Runs to completion even when the calling task is cancelled meanwhile;
        the CancelledError is re-raised once the group is gone.
        """
        if proc.returncode is not None:
            return
        stop = asyncio.create_task(self._stop_group(proc, cancelled))
        try:
            await asyncio.shield(stop)
        except asyncio.CancelledError:
            await stop
            raise

    async def _stop_group(self, proc: asyncio.subprocess.Process, cancelled: bool) -> None:
        # Cancellation is reported by run().
        log = logger.debug if cancelled else logger.info
        log("exe_terminating", exe=self.exe_path, pid=proc.pid, generation=self.generation)
        self._signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace)
        except TimeoutError:
            logger.warning("exe_kill_escalated", exe=self.exe_path, pid=proc.pid, grace=self._kill_grace)
            self._signal_group(proc, signal.SIGKILL)
            await proc.wait()

    @staticmethod
    def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        # start_new_session=True makes the child its own process group leader.
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except OSError:
            try:
                proc.send_signal(sig)
            except ProcessLookupError:
                pass

    @staticmethod
    async def _drain(pumps: list[asyncio.Task]) -> None:
        """Let the pipe pumps hit EOF; give up on pipes held open by grandchildren."""
        _, pending = await asyncio.wait(pumps, timeout=PUMP_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pumps, return_exceptions=True)

    # ── tenacity hooks ────────────────────────────────────────────────

    def _backoff(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, ScreenLockedError):
            return self._locked_retry_delay
        return self._retry_delay

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        self.state = RunState.RETRYING
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        if isinstance(exc, ScreenLockedError):
            logger.info("exe_gate_blocked", exe=self.exe_path, retry_in=delay)
            return
        self.last_outcome = RunOutcome(OutcomeKind.FAILED, str(exc))
        logger.warning(
            "exe_failed_will_retry",
            exe=self.exe_path, generation=self.generation,
            attempt=self.attempts, retry_in=delay, error=str(exc),
        )
