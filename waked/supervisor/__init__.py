"""Wake-triggered process supervisor.

Components:
- WakeDispatcher: starts a new Generation of runs on every resume event
- SupervisedRun: per-executable gate / run / retry loop
- LockStateOracle: ioreg + plutil query for the screen-lock state
- OutputCapture: splits child stdout/stderr into log lines
- ClockGapWakeSource / SignalWakeSource: deliver resume events
"""

from waked.supervisor.capture import OutputCapture
from waked.supervisor.dispatcher import Generation, WakeDispatcher
from waked.supervisor.lock_state import LockState, LockStateOracle
from waked.supervisor.runner import ExecutableDescriptor, OutcomeKind, RunOutcome, RunState, SupervisedRun
from waked.supervisor.wake_sources import ClockGapWakeSource, SignalWakeSource, build_wake_source

__all__ = [
    "WakeDispatcher",
    "Generation",
    "SupervisedRun",
    "ExecutableDescriptor",
    "RunState",
    "RunOutcome",
    "OutcomeKind",
    "LockStateOracle",
    "LockState",
    "OutputCapture",
    "ClockGapWakeSource",
    "SignalWakeSource",
    "build_wake_source",
]
