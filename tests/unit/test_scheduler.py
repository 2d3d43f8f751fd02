"""Unit tests for sequential and parallel scheduling."""

import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from hvtest.runner import RunOptions, RunRecord, Verdict
from hvtest.scheduler import Scheduler
from hvtest.supervisor import ProcessRegistry


class FakeRunner:
    """Records run order; targets listed in `delays` sleep before finishing."""

    def __init__(self, dry_run=False, delays=None, on_run=None):
        self.options = RunOptions(output_dir=Path("/tmp/hvtest-unused"), dry_run=dry_run)
        self.delays = delays or {}
        self.on_run = on_run
        self.started = []
        self.finished = []
        self._lock = threading.Lock()

    def run(self, name, index=1, total=1):
        with self._lock:
            self.started.append(name)
        if self.on_run is not None:
            self.on_run(name)
        time.sleep(self.delays.get(name, 0))
        record = RunRecord(target_name=name)
        record.finish(Verdict.PASSED, "ok")
        with self._lock:
            self.finished.append(name)
        return record


NAMES = ["starry-riscv64", "starry-loongarch64", "starry-aarch64"]


class TestSequential:
    """Sequential mode."""

    def test_order_and_preemption(self):
        """Targets run one after the other with the port released before each."""
        events = []
        runner = FakeRunner(on_run=lambda name: events.append(("run", name)))

        def preempt(port):
            events.append(("preempt", port))
            return 0

        records = Scheduler(runner, preempt=preempt, port=5555).execute(NAMES, parallel=False)

        assert [r.target_name for r in records] == NAMES
        assert events == [
            ("preempt", 5555),
            ("run", "starry-riscv64"),
            ("preempt", 5555),
            ("run", "starry-loongarch64"),
            ("preempt", 5555),
            ("run", "starry-aarch64"),
        ]

    def test_single_target_is_sequential(self):
        """A single target never uses the thread pool."""
        preempt = MagicMock(return_value=0)
        records = Scheduler(FakeRunner(), preempt=preempt, port=5555).execute(["starry-aarch64"], parallel=True)

        assert len(records) == 1
        preempt.assert_called_once_with(5555)

    def test_on_result_callback(self):
        """Every finished record is handed to the callback."""
        seen = []
        Scheduler(FakeRunner(), preempt=MagicMock(return_value=0), on_result=seen.append, port=5555).execute(
            NAMES, parallel=False
        )

        assert [r.target_name for r in seen] == NAMES

    def test_dry_run_does_not_preempt(self):
        """Dry runs never kill processes."""
        preempt = MagicMock(return_value=0)
        Scheduler(FakeRunner(dry_run=True), preempt=preempt, port=5555).execute(NAMES, parallel=False)

        preempt.assert_not_called()

    def test_interrupt_stops_remaining_targets(self):
        """An interrupt in one target stops the sequence."""

        def on_run(name):
            if name == "starry-loongarch64":
                raise KeyboardInterrupt

        runner = FakeRunner(on_run=on_run)
        with pytest.raises(KeyboardInterrupt):
            Scheduler(runner, preempt=MagicMock(return_value=0), port=5555).execute(NAMES, parallel=False)

        assert runner.started == ["starry-riscv64", "starry-loongarch64"]


class TestParallel:
    """Parallel mode."""

    def test_preempts_once(self):
        """The port is released once, before any worker starts."""
        preempt = MagicMock(return_value=0)
        Scheduler(FakeRunner(), preempt=preempt, port=5555).execute(NAMES, parallel=True)

        preempt.assert_called_once_with(5555)

    def test_records_in_selection_order(self):
        """Records come back in selection order even when finishing out of order."""
        runner = FakeRunner(delays={"starry-riscv64": 0.3})

        records = Scheduler(runner, preempt=MagicMock(return_value=0), port=5555).execute(NAMES, parallel=True)

        assert [r.target_name for r in records] == NAMES
        assert runner.finished[-1] == "starry-riscv64"

    def test_targets_overlap(self):
        """All targets are in flight at the same time."""
        barrier = threading.Barrier(len(NAMES), timeout=5)
        runner = FakeRunner(on_run=lambda name: barrier.wait())

        records = Scheduler(runner, preempt=MagicMock(return_value=0), port=5555).execute(NAMES, parallel=True)

        assert all(r.verdict is Verdict.PASSED for r in records)

    def test_interrupt_closes_registry_and_joins_workers(self):
        """An interrupt kills the processes, then waits for every started worker to report."""
        registry = ProcessRegistry()
        seen = []

        def on_run(name):
            if name == "starry-riscv64":
                raise KeyboardInterrupt
            # Stand-in for a phase that ends once its process is killed.
            deadline = time.monotonic() + 5
            while not registry.closed and time.monotonic() < deadline:
                time.sleep(0.01)
            time.sleep(0.2)

        runner = FakeRunner(on_run=on_run)
        scheduler = Scheduler(runner, preempt=MagicMock(return_value=0), on_result=seen.append, port=5555, registry=registry)

        with pytest.raises(KeyboardInterrupt):
            scheduler.execute(NAMES, parallel=True)

        assert registry.closed
        assert sorted(r.target_name for r in seen) == ["starry-aarch64", "starry-loongarch64"]
        assert sorted(runner.finished) == ["starry-aarch64", "starry-loongarch64"]
