"""Target scheduling.

Sequential mode finishes target i (status file written) before target i+1
starts, and takes the contended port away from whatever holds it before every
target. Parallel mode runs one worker thread per target; the port is cleared
once before the workers start, since preempting per target would kill the
sessions of sibling targets.

Records are always returned in selection order, whatever order they finish in.
On interrupt in parallel mode the process registry is closed and its trees
killed, then the workers are joined, so every started target has handed its
record to on_result before the interrupt propagates.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

from hvtest.output import log, log_warning
from hvtest.ports import contended_port, preempt_port
from hvtest.runner import RunRecord, TargetRunner
from hvtest.supervisor import ProcessRegistry

logger = logging.getLogger(__name__)


class Scheduler:
    """Runs a selection of targets sequentially or in parallel."""

    def __init__(
        self,
        runner: TargetRunner,
        preempt: Callable[[int], int] = preempt_port,
        on_result: Optional[Callable[[RunRecord], None]] = None,
        port: Optional[int] = None,
        registry: Optional[ProcessRegistry] = None,
    ):
        """Initialize the scheduler.

        Args:
            runner: Target runner executing single targets
            preempt: Function killing the owners of a port (injectable for tests)
            on_result: Callback invoked with every finished record
            port: Contended port (defaults to HVTEST_CONTENDED_PORT or 5555)
            registry: Registry of the runner's processes, killed on interrupt
        """
        self.runner = runner
        self.preempt = preempt
        self.on_result = on_result
        self.port = port if port is not None else contended_port()
        self.registry = registry

    def _release_port(self) -> None:
        if self.runner.options.dry_run:
            return
        killed = self.preempt(self.port)
        if killed:
            log(f"  Released port {self.port} ({killed} process(es) killed)")

    def _run_one(self, name: str, index: int, total: int, preempt: bool) -> RunRecord:
        if preempt:
            self._release_port()
        record = self.runner.run(name, index, total)
        if self.on_result is not None:
            self.on_result(record)
        return record

    def _stop_processes(self) -> None:
        if self.registry is None:
            return
        killed = self.registry.kill_all()
        if killed:
            log_warning(f"Killed {killed} running process tree(s)")

    def execute(self, names: Sequence[str], parallel: bool) -> List[RunRecord]:
        """Run targets and collect their records.

        Args:
            names: Target names in selection order
            parallel: Run targets concurrently

        Returns:
            One RunRecord per name, in the same order
        """
        total = len(names)
        if not parallel or total <= 1:
            logger.debug(f"Running {total} target(s) sequentially")
            return [self._run_one(name, i + 1, total, preempt=True) for i, name in enumerate(names)]

        logger.debug(f"Running {total} targets in parallel")
        self._release_port()
        executor = ThreadPoolExecutor(max_workers=total, thread_name_prefix="hvtest-target")
        try:
            futures: List[Future] = [executor.submit(self._run_one, name, i + 1, total, False) for i, name in enumerate(names)]
            return [future.result() for future in futures]
        except (KeyboardInterrupt, SystemExit):
            # Workers only see the interrupt through their killed processes.
            self._stop_processes()
            raise
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
