"""Tests for the wake dispatcher and generation handling."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from waked.supervisor.dispatcher import Generation, WakeDispatcher
from waked.supervisor.runner import OutcomeKind, RunState


@pytest.fixture
def unlocked(fake_oracle):
    return fake_oracle([False])


@pytest.fixture
def dispatcher(settings, unlocked, sink):
    return WakeDispatcher(settings, oracle=unlocked, sink=sink)


def _run_for(generation: Generation, name: str):
    return next(r for r in generation.runs if r.descriptor.name == name)


class TestListing:
    """Tests for WakeDispatcher.list_executables()."""

    def test_skips_directories_and_sorts(self, dispatcher, make_exe, exes_dir) -> None:
        make_exe("b-on-unlock", "exit 0\n")
        make_exe("a", "exit 0\n")
        (exes_dir / "lib").mkdir()

        descriptors = dispatcher.list_executables()

        assert [d.name for d in descriptors] == ["a", "b-on-unlock"]
        assert [d.requires_unlock for d in descriptors] == [False, True]
        assert all(Path(d.path).is_absolute() for d in descriptors)

    def test_non_executable_files_are_listed(self, dispatcher, exes_dir) -> None:
        """Every non-directory entry is a candidate; exec errors surface per run."""
        (exes_dir / "README").write_text("notes")
        assert [d.name for d in dispatcher.list_executables()] == ["README"]

    def test_missing_directory_raises(self, settings, tmp_path) -> None:
        d = WakeDispatcher(settings.model_copy(update={"waked_exes_dir": str(tmp_path / "gone")}))
        with pytest.raises(OSError):
            d.list_executables()


class TestWakeDispatcher:
    """Tests for on_wake() generation swapping."""

    @pytest.mark.asyncio
    async def test_scenario_success_and_retry_once(self, dispatcher, make_exe, state_dir, lines_of) -> None:
        """'a' exits 0 once; 'b-on-unlock' fails once, then succeeds after a backoff."""
        make_exe("a", f"echo ran >> {state_dir}/a.count\nexit 0\n")
        make_exe("b-on-unlock", f"""
            echo ran >> {state_dir}/b.count
            if [ -e {state_dir}/b.ok ]; then exit 0; fi
            touch {state_dir}/b.ok
            exit 1
        """)
        loop = asyncio.get_running_loop()
        started = loop.time()

        generation = await dispatcher.on_wake()
        assert await generation.wait(timeout=10)

        assert lines_of(state_dir / "a.count") == ["ran"]
        assert lines_of(state_dir / "b.count") == ["ran", "ran"]
        a, b = _run_for(generation, "a"), _run_for(generation, "b-on-unlock")
        assert (a.attempts, b.attempts) == (1, 2)
        assert a.state is RunState.STOPPED and b.state is RunState.STOPPED
        assert b.last_outcome.kind is OutcomeKind.SUCCESS
        assert loop.time() - started >= dispatcher._settings.waked_retry_delay

    @pytest.mark.asyncio
    async def test_second_wake_terminates_previous_children_first(
        self, dispatcher, make_exe, state_dir, wait_until, lines_of,
    ) -> None:
        """'c' is mid-attempt when the next wake arrives."""
        log = state_dir / "c.log"
        make_exe("c", f"""
            trap 'echo term >> {log}; exit 143' TERM
            echo start >> {log}
            sleep 30 &
            wait
        """)

        first = await dispatcher.on_wake()
        await wait_until(lambda: lines_of(log) == ["start"])

        second = await dispatcher.on_wake()
        try:
            # The old child was signalled before the new run was started.
            assert lines_of(log)[:2] == ["start", "term"]
            assert first.cancelled and first.active == 0
            assert _run_for(first, "c").last_outcome.kind is OutcomeKind.CANCELLED

            await wait_until(lambda: lines_of(log) == ["start", "term", "start"])
            assert dispatcher.generation is second
            assert not second.cancelled
            assert second.active == 1
        finally:
            await dispatcher.close()

        assert lines_of(log) == ["start", "term", "start", "term"]

    @pytest.mark.asyncio
    async def test_exactly_one_generation_active(self, dispatcher, make_exe) -> None:
        make_exe("idle", "sleep 30\n")
        generations = await asyncio.gather(*(dispatcher.on_wake() for _ in range(3)))
        try:
            assert sorted(g.number for g in generations) == [1, 2, 3]
            current = dispatcher.generation
            assert current.number == 3
            for g in generations:
                if g is not current:
                    assert g.cancelled and g.active == 0
        finally:
            await dispatcher.close()

    @pytest.mark.asyncio
    async def test_succeeded_exe_reruns_on_next_wake(self, dispatcher, make_exe, state_dir, lines_of) -> None:
        make_exe("a", f"echo ran >> {state_dir}/a.count\n")

        first = await dispatcher.on_wake()
        assert await first.wait(timeout=10)
        second = await dispatcher.on_wake()
        assert await second.wait(timeout=10)

        assert lines_of(state_dir / "a.count") == ["ran", "ran"]

    @pytest.mark.asyncio
    async def test_unreadable_directory_drops_event(self, dispatcher, make_exe, exes_dir, tmp_path) -> None:
        make_exe("idle", "sleep 30\n")
        first = await dispatcher.on_wake()
        exes_dir.rename(tmp_path / "moved")
        try:
            with capture_logs() as logs:
                result = await dispatcher.on_wake()

            assert result is None
            assert dispatcher.generation is first
            assert not first.cancelled
            assert any(e["event"] == "exes_dir_unreadable" and e["log_level"] == "error" for e in logs)
        finally:
            await dispatcher.close()

    @pytest.mark.asyncio
    async def test_empty_directory_starts_empty_generation(self, dispatcher) -> None:
        generation = await dispatcher.on_wake()
        assert generation.number == 1
        assert generation.runs == []
        assert await generation.wait(timeout=1)

    @pytest.mark.asyncio
    async def test_runs_do_not_block_each_other(self, dispatcher, make_exe, state_dir, wait_until) -> None:
        make_exe("slow", "sleep 30\n")
        make_exe("fast", f"touch {state_dir}/fast\n")

        generation = await dispatcher.on_wake()
        try:
            await wait_until(lambda: _run_for(generation, "fast").state is RunState.STOPPED)
            assert _run_for(generation, "slow").state is RunState.RUNNING
        finally:
            await dispatcher.close()

    @pytest.mark.asyncio
    async def test_close_cancels_and_refuses_wakes(self, dispatcher, make_exe) -> None:
        make_exe("idle", "sleep 30\n")
        generation = await dispatcher.on_wake()

        await dispatcher.close()

        assert dispatcher.closed
        assert generation.cancelled and generation.active == 0
        assert await dispatcher.on_wake() is None

    @pytest.mark.asyncio
    async def test_notify_wake_from_another_thread(self, dispatcher, make_exe) -> None:
        make_exe("a", "exit 0\n")
        dispatcher.bind_loop()

        future = await asyncio.to_thread(dispatcher.notify_wake)
        generation = await asyncio.wrap_future(future)

        assert generation is dispatcher.generation
        assert await generation.wait(timeout=10)

    def test_notify_wake_requires_bound_loop(self, dispatcher) -> None:
        with pytest.raises(RuntimeError):
            dispatcher.notify_wake()


class TestLockHelperFailure:
    """Scenario: both lock helpers fail; gated executables still run."""

    @pytest.mark.asyncio
    async def test_gated_exe_runs_when_helpers_fail(self, settings, sink, make_exe, state_dir, tmp_path) -> None:
        helpers = tmp_path / "helpers"
        helpers.mkdir()
        ioreg = make_exe("ioreg", "exit 1\n", directory=helpers)
        plutil = make_exe("plutil", "exit 1\n", directory=helpers)
        make_exe("mount-on-unlock", f"touch {state_dir}/ran\n")
        dispatcher = WakeDispatcher(
            settings.model_copy(update={"waked_ioreg_path": str(ioreg), "waked_plutil_path": str(plutil)}),
            sink=sink,
        )

        with capture_logs() as logs:
            generation = await dispatcher.on_wake()
            assert await generation.wait(timeout=10)

        assert (state_dir / "ran").exists()
        assert _run_for(generation, "mount-on-unlock").last_outcome.kind is OutcomeKind.SUCCESS
        assert any(e["event"] == "lock_state_unknown" and e["log_level"] == "warning" for e in logs)


class TestGeneration:
    """Tests for the Generation cancellation scope."""

    @pytest.mark.asyncio
    async def test_cancelled_generation_refuses_runs(self, settings, sink, exes_dir) -> None:
        from waked.supervisor.runner import ExecutableDescriptor, SupervisedRun

        generation = Generation(7)
        generation.cancel("test")
        run = SupervisedRun(ExecutableDescriptor.from_path(exes_dir / "x"), settings=settings, sink=sink)
        with pytest.raises(RuntimeError):
            generation.start(run)

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self) -> None:
        generation = Generation(1)
        with capture_logs() as logs:
            generation.cancel("first")
            generation.cancel("second")
        assert [e["event"] for e in logs].count("generation_cancelled") == 1

    @pytest.mark.asyncio
    async def test_crashing_run_is_logged(self, settings, sink, exes_dir, monkeypatch) -> None:
        from waked.supervisor.runner import ExecutableDescriptor, SupervisedRun

        async def boom(self):
            raise RuntimeError("bug")

        monkeypatch.setattr(SupervisedRun, "run", boom)
        generation = Generation(1)
        with capture_logs() as logs:
            task = generation.start(
                SupervisedRun(ExecutableDescriptor.from_path(exes_dir / "x"), settings=settings, sink=sink),
            )
            assert await task is None
        assert any(e["event"] == "run_crashed" for e in logs)
