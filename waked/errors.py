"""Exception hierarchy for waked."""

from __future__ import annotations

from typing import Optional, Sequence


class WakedError(Exception):
    """Base class for all waked errors."""


class ConfigError(WakedError):
    """Startup configuration is unusable. Fatal."""


class LockStateError(WakedError):
    """A lock-state helper command failed or produced unusable output."""

    def __init__(
        self,
        argv: Sequence[str],
        reason: str,
        output: bytes = b"",
        returncode: Optional[int] = None,
    ) -> None:
        self.argv = list(argv)
        self.reason = reason
        self.output = output
        self.returncode = returncode
        super().__init__(f"{self.argv[0]} failed ({reason}) - output: {output[:200]!r}")


class AttemptFailedError(WakedError):
    """One invocation of an executable did not exit cleanly."""

    def __init__(
        self,
        exe_path: str,
        reason: str,
        returncode: Optional[int] = None,
        timed_out: bool = False,
    ) -> None:
        self.exe_path = exe_path
        self.reason = reason
        self.returncode = returncode
        self.timed_out = timed_out
        super().__init__(reason)


class ScreenLockedError(WakedError):
    """The executable requires an unlocked session and the screen is locked."""

    def __init__(self, exe_path: str) -> None:
        self.exe_path = exe_path
        super().__init__("screen is locked")


class ExecutableVanishedError(WakedError):
    """The executable is no longer present on disk."""

    def __init__(self, exe_path: str, cause: OSError) -> None:
        self.exe_path = exe_path
        self.cause = cause
        super().__init__(f"no longer stat'able - {cause}")
