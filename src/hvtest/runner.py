"""Per-target state machine.

    PENDING -> CLONING -> PATCHING -> BUILDING -> TESTING -> PASSED
                                                          \\-> FAILED / SKIPPED

Every selected target ends with exactly one verdict and a status file, no
matter how the run ended. Errors scoped to the target are converted to a
verdict here; only KeyboardInterrupt/SystemExit propagate (after the status
file is written).
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Tuple

from hvtest.checkout import GitCheckout
from hvtest.config.models import Configuration, TestTarget
from hvtest.config.selection import matches
from hvtest.errors import BuildFailed, HardwareUnavailable, TargetError, TargetNotFound, TestFailed
from hvtest.hardware import HardwareProbe
from hvtest.images import ImageCache
from hvtest.output import log, log_debug, log_error, log_phase, log_success, log_warning
from hvtest.patcher import apply_patch, resolve_override_path
from hvtest.strategies import TargetContext, TargetStrategy, strategy_for
from hvtest.supervisor import DEFAULT_SUCCESS_MARKERS, ProcessSupervisor

logger = logging.getLogger(__name__)

MANIFEST_NAME = "Cargo.toml"
STATUS_SUFFIX = ".status"
EXCLUDED_REASON = "excluded"
DRY_RUN_REASON = "dry run"


class Phase(Enum):
    """State of a target run."""

    PENDING = "pending"
    CLONING = "cloning"
    PATCHING = "patching"
    BUILDING = "building"
    TESTING = "testing"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Verdict(Enum):
    """Final classification of a target."""

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class RunRecord:
    """Result of running one target.

    Attributes:
        target_name: Name of the target (may be unknown to the registry)
        phase: Last phase the run entered before it ended
        verdict: Final verdict, None while the run is in progress
        reason: Human-readable explanation of the verdict
        log_path: Per-target log file
        started_at: Local start time, ISO 8601
        elapsed: Duration in seconds
    """

    target_name: str
    phase: Phase = Phase.PENDING
    verdict: Optional[Verdict] = None
    reason: str = ""
    log_path: Optional[Path] = None
    started_at: str = ""
    elapsed: float = 0.0

    def finish(self, verdict: Verdict, reason: str = "") -> None:
        self.verdict = verdict
        self.reason = reason

    @property
    def state(self) -> Phase:
        """Terminal phase once a verdict exists, otherwise the current phase."""
        return Phase(self.verdict.value) if self.verdict is not None else self.phase

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "target": self.target_name,
            "phase": self.phase.value,
            "verdict": self.verdict.value if self.verdict else None,
            "reason": self.reason,
            "log": str(self.log_path) if self.log_path else None,
            "started_at": self.started_at,
            "elapsed": round(self.elapsed, 2),
        }


@dataclass
class RunOptions:
    """Options shared by every target of one invocation.

    Attributes:
        output_dir: Root for logs/, repos/, status files and reports
        dry_run: Print intended commands, run nothing
        verbose: Debug output enabled
        cleanup: Restore mutated checkout files after the run
        parallel: Allow parallel execution when the selection permits it
        exclude: Target names or family tokens to skip
        hardware: Allow board targets to use physical hardware
    """

    output_dir: Path
    dry_run: bool = False
    verbose: bool = False
    cleanup: bool = True
    parallel: bool = True
    exclude: Tuple[str, ...] = ()
    hardware: bool = True

    @property
    def logs_dir(self) -> Path:
        return self.output_dir / "logs"

    @property
    def repos_dir(self) -> Path:
        return self.output_dir / "repos"

    def status_path(self, name: str) -> Path:
        return self.output_dir / f"{name}{STATUS_SUFFIX}"


class TargetRunner:
    """Runs single targets through clone, patch, build and test."""

    def __init__(
        self,
        config: Configuration,
        options: RunOptions,
        supervisor: Optional[ProcessSupervisor] = None,
        checkout: Optional[GitCheckout] = None,
        probe: Optional[HardwareProbe] = None,
        image_cache: Optional[ImageCache] = None,
        prompt: Optional[Callable[[str], str]] = None,
    ):
        self.config = config
        self.options = options
        self.supervisor = supervisor or ProcessSupervisor()
        self.checkout = checkout or GitCheckout(self.supervisor)
        self.probe = probe or HardwareProbe(enabled=options.hardware)
        self.image_cache = image_cache or ImageCache()
        self.prompt = prompt

    def run(self, name: str, index: int = 1, total: int = 1) -> RunRecord:
        """Run one target to a verdict.

        Args:
            name: Target name
            index: Position in the selection (for progress output)
            total: Size of the selection

        Returns:
            The finished RunRecord; the status file has been written
        """
        started = datetime.now()
        start = time.monotonic()
        log_path = self.options.logs_dir / f"{name}_{started:%Y%m%d_%H%M%S}.log"
        record = RunRecord(target_name=name, log_path=log_path, started_at=started.isoformat(timespec="seconds"))

        log_phase(index, total, f"Target: {name}")
        try:
            self._execute(record)
        except HardwareUnavailable as e:
            record.finish(Verdict.SKIPPED, str(e))
            log_warning(f"  Skipped {name}: {e}")
        except TargetError as e:
            reason = str(e)
            if getattr(e, "timed_out", False) and "timed out" not in reason:
                reason = f"timed out: {reason}"
            record.finish(Verdict.FAILED, reason)
            log_error(f"  {name} failed during {record.phase.value}: {reason}")
        except Exception as e:
            logger.exception(f"Unexpected error while running {name}")
            record.finish(Verdict.FAILED, f"unexpected error: {e}")
            log_error(f"  {name} failed with unexpected error: {e}")
        finally:
            if record.verdict is None:
                record.finish(Verdict.FAILED, "interrupted")
            record.elapsed = time.monotonic() - start
            self._write_status(record)
            log_debug(f"  {name}: {record.state.value} in {record.elapsed:.1f}s, log {log_path}")
        return record

    def _execute(self, record: RunRecord) -> None:
        options = self.options
        target = self.config.get(record.target_name)
        if target is None:
            raise TargetNotFound(f"Unknown test target: {record.target_name}")

        if matches(target, options.exclude):
            record.finish(Verdict.SKIPPED, EXCLUDED_REASON)
            log(f"  Skipped {target.name}: excluded")
            return

        checkout_dir = options.repos_dir / target.name
        self.probe.check(target, checkout_dir)
        if options.dry_run:
            log(f"  [DRY-RUN] {target.name} ({target.kind.value}, {target.architecture or 'any arch'})")
        else:
            log_path = record.log_path
            assert log_path is not None
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(log_path, "a", encoding="utf-8") as f:
                f.write(f"# {target.name} started {record.started_at}\n")

        record.phase = Phase.CLONING
        self.checkout.ensure(target, checkout_dir, record.log_path, dry_run=options.dry_run)

        record.phase = Phase.PATCHING
        self._patch(target, checkout_dir)

        record.phase = Phase.BUILDING
        strategy = strategy_for(target.kind)
        ctx = TargetContext(
            target=target,
            checkout=checkout_dir,
            log_path=record.log_path,
            supervisor=self.supervisor,
            image_cache=self.image_cache,
            dry_run=options.dry_run,
            prompt=self.prompt,
        )
        self._build(ctx, strategy)

        if target.test is None:
            if options.dry_run:
                record.finish(Verdict.SKIPPED, DRY_RUN_REASON)
            else:
                record.finish(Verdict.PASSED, "build only")
                log_success(f"  Build-only target passed: {target.name}")
            return

        record.phase = Phase.TESTING
        command = strategy.prepare_test(ctx)
        test = target.test
        if options.dry_run:
            log(f"  Would run: {command} (timeout {test.timeout / 60:.0f}m, success markers)")
            record.finish(Verdict.SKIPPED, DRY_RUN_REASON)
            return

        log(f"  Testing: {command}")
        outcome = self.supervisor.run(
            command,
            checkout_dir,
            test.timeout,
            record.log_path,
            success_markers=DEFAULT_SUCCESS_MARKERS + test.success_markers,
            failure_markers=test.failure_markers,
            env=dict(test.env),
        )
        if outcome.timed_out:
            raise TestFailed(f"timed out: {outcome.reason}", timed_out=True)
        if not outcome.success:
            raise TestFailed(outcome.reason, exit_code=outcome.exit_code)
        record.finish(Verdict.PASSED, outcome.reason)
        log_success(f"  Test passed: {target.name} ({outcome.reason})")

    def _patch(self, target: TestTarget, checkout_dir: Path) -> None:
        component = self.config.component
        if self.options.dry_run:
            log(
                f"  Would bind {component.crate_name} in [patch.{target.patch.section}] "
                f"of {checkout_dir / MANIFEST_NAME} ({target.patch.path_template})"
            )
            return
        override = resolve_override_path(checkout_dir, target.patch.path_template, component.directory)
        apply_patch(checkout_dir, checkout_dir / MANIFEST_NAME, component, target.patch.section, override)

    def _build(self, ctx: TargetContext, strategy: TargetStrategy) -> None:
        build = ctx.target.build
        strategy.prepare_build(ctx)
        if build.command:
            command = ctx.target.expand(build.command)
            log(f"  Building: {command}")
            ctx.run_step(command, build.timeout, BuildFailed, "build")
            if not ctx.dry_run:
                log_success("  Build succeeded")
        else:
            log("  No build command, skipping build step")
        for step in build.post_commands:
            command = ctx.target.expand(step.command)
            log(f"  Post-build: {command}")
            ctx.run_step(command, step.timeout, BuildFailed, f"post-build step '{command}'")

    def _write_status(self, record: RunRecord) -> None:
        path = self.options.status_path(record.target_name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"{record.verdict.value if record.verdict else Verdict.FAILED.value}\n", encoding="utf-8")
        except OSError as e:
            log_error(f"Cannot write status file {path}: {e}")
