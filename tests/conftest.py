"""Shared test fixtures and configuration."""

from __future__ import annotations

import asyncio
import os
import textwrap
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import pytest

os.environ.setdefault("WAKED_ENV", "test")
os.environ.setdefault("WAKED_LOG_LEVEL", "WARNING")

import waked.config
from waked.config import Settings


class LineSink:
    """Collects (exe_path, line) pairs the way the log sink receives them."""

    def __init__(self) -> None:
        self.lines: list[tuple[str, str]] = []

    def __call__(self, exe_path: str, line: str) -> None:
        self.lines.append((exe_path, line))

    def lines_for(self, exe_path: str | Path) -> list[str]:
        return [line for path, line in self.lines if path == str(exe_path)]


class FakeOracle:
    """Lock-state oracle returning scripted answers.

    Each answer is a bool or an exception instance to raise. The last
    answer repeats once the script runs out.
    """

    def __init__(self, answers: Iterable[Any], on_call: Optional[Callable[[], None]] = None) -> None:
        self._answers = list(answers)
        self._on_call = on_call
        self.calls = 0

    async def is_locked(self) -> bool:
        if self._on_call:
            self._on_call()
        answer = self._answers[min(self.calls, len(self._answers) - 1)]
        self.calls += 1
        if isinstance(answer, BaseException):
            raise answer
        return answer


@pytest.fixture(autouse=True)
def _reset_settings_singleton():
    """Keep load_settings() in one test from leaking into the next."""
    yield
    waked.config._settings = None


@pytest.fixture
def exes_dir(tmp_path: Path) -> Path:
    path = tmp_path / "exes"
    path.mkdir()
    return path


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Scratch directory test scripts write their bookkeeping into."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def settings(exes_dir: Path) -> Settings:
    """Settings with timings short enough for tests."""
    return Settings(
        waked_env="test",
        waked_log_level="WARNING",
        waked_exes_dir=str(exes_dir),
        waked_retry_delay=0.2,
        waked_locked_retry_delay=0.1,
        waked_kill_grace=1.0,
        waked_exec_timeout=10,
        _env_file=None,
    )


@pytest.fixture
def make_exe(exes_dir: Path) -> Callable[..., Path]:
    """Write a /bin/sh script into the exes dir."""

    def _make(name: str, body: str, mode: int = 0o755, directory: Optional[Path] = None) -> Path:
        path = (directory or exes_dir) / name
        path.write_text("#!/bin/sh\n" + textwrap.dedent(body).lstrip("\n"))
        path.chmod(mode)
        return path

    return _make


@pytest.fixture
def sink() -> LineSink:
    return LineSink()


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout expires."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError(f"condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return _wait


def read_lines(path: Path) -> list[str]:
    if not path.exists():
        return []
    return path.read_text().splitlines()


@pytest.fixture
def lines_of() -> Callable[[Path], list[str]]:
    return read_lines


@pytest.fixture
def fake_oracle() -> type[FakeOracle]:
    return FakeOracle
