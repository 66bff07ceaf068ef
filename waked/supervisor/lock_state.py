"""Lock-State Oracle: Asks macOS whether the console session is locked.

Based on work by Joel Bruner (https://stackoverflow.com/a/66723000):
``ioreg`` dumps the IORegistry root as a plist, and ``plutil`` extracts
``IOConsoleUsers.0.CGSSessionScreenIsLocked`` from it. The key is only
present while the screen is locked, so its absence is a cheap "unlocked".
"""

from __future__ import annotations

import asyncio
import subprocess
from enum import StrEnum
from typing import Optional, Sequence

from waked.config import Settings, get_settings
from waked.errors import LockStateError
from waked.logging_config import get_logger

logger = get_logger(__name__)

SCREEN_LOCKED_KEY = "CGSSessionScreenIsLocked"


class LockState(StrEnum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    UNKNOWN = "unknown"


class LockStateOracle:
    """Runs the ioreg/plutil helper chain. Stateless; never caches."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        self._ioreg = settings.waked_ioreg_path
        self._plutil = settings.waked_plutil_path

    @property
    def ioreg_argv(self) -> list[str]:
        return [self._ioreg, "-n", "Root", "-d1", "-a"]

    @property
    def plutil_argv(self) -> list[str]:
        return [self._plutil, "-extract", f"IOConsoleUsers.0.{SCREEN_LOCKED_KEY}", "raw", "-"]

    async def is_locked(self) -> bool:
        """Return True if the session is locked.

        Raises LockStateError if either helper fails. Cancelling the calling
        task kills whichever helper is in flight.
        """
        ioreg_output = await self._run_helper(self.ioreg_argv)

        if SCREEN_LOCKED_KEY.encode() not in ioreg_output:
            return False

        plutil_output = await self._run_helper(self.plutil_argv, stdin=ioreg_output)
        return plutil_output.strip() == b"true"

    async def state(self) -> LockState:
        """Like is_locked(), but folds helper failures into LockState.UNKNOWN."""
        try:
            locked = await self.is_locked()
        except LockStateError as exc:
            logger.warning("lock_state_unknown", error=str(exc))
            return LockState.UNKNOWN
        return LockState.LOCKED if locked else LockState.UNLOCKED

    async def _run_helper(self, argv: Sequence[str], stdin: Optional[bytes] = None) -> bytes:
        """Run one helper and return its combined stdout/stderr."""
        spawn = asyncio.create_task(asyncio.create_subprocess_exec(
            *argv,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        ))
        try:
            proc = await asyncio.shield(spawn)
        except OSError as exc:
            raise LockStateError(argv, str(exc)) from exc
        except asyncio.CancelledError:
            await asyncio.wait([spawn])
            if not spawn.cancelled() and spawn.exception() is None:
                await self._kill(spawn.result())
            raise

        try:
            output, _ = await proc.communicate(stdin)
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        if proc.returncode != 0:
            raise LockStateError(
                argv, f"exit status {proc.returncode}", output=output, returncode=proc.returncode,
            )
        logger.debug("lock_helper_finished", helper=argv[0], size=len(output))
        return output

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
