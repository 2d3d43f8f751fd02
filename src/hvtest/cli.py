"""
Command-line interface for hvtest.

Usage:
    hvtest                                  # run all targets
    hvtest -t axvisor-qemu                  # run one family
    hvtest -t starry-aarch64 -v             # run one target with debug output
    hvtest -t list                          # list configured targets
    hvtest -c ../my-crate -f ci.json --dry-run
"""

import argparse
import logging
import shutil
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from hvtest import __version__
from hvtest.checkout import restore_snapshots
from hvtest.config import SELECT_ALL, Configuration, resolve_config, select
from hvtest.errors import ConfigInvalid, MissingDependency
from hvtest.output import get_console, init_timer, log, log_banner, log_error, log_success, log_warning, set_verbose
from hvtest.reporter import EXIT_FAILED, EXIT_OK, ResultAggregator, render_summary, write_report
from hvtest.runner import RunOptions, TargetRunner
from hvtest.scheduler import Scheduler
from hvtest.supervisor import ProcessRegistry, ProcessSupervisor

logger = logging.getLogger(__name__)

LIST_TARGETS = "list"
EXIT_INTERRUPTED = 130
REQUIRED_TOOLS = ("git", "cargo")


@dataclass
class TestArgs:
    """Arguments for a test run."""

    __test__ = False  # keep pytest from collecting this class

    component_dir: Path
    config: Optional[Path] = None
    target: str = SELECT_ALL
    output: Optional[Path] = None
    verbose: bool = False
    cleanup: bool = True
    dry_run: bool = False
    sequential: bool = False
    exclude: List[str] = field(default_factory=list)
    hardware: bool = True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hvtest",
        description="Hypervisor integration test orchestrator: patch a component into downstream targets, build and boot them",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"hvtest {__version__}",
    )
    parser.add_argument(
        "-c",
        "--component-dir",
        type=Path,
        default=Path.cwd(),
        help="Component directory (default: current directory)",
    )
    parser.add_argument(
        "-f",
        "--config",
        type=Path,
        default=None,
        help="Configuration file (default: .github/config.json, .test-config.json or built-in targets)",
    )
    parser.add_argument(
        "-t",
        "--target",
        default=SELECT_ALL,
        help="Target name, family (e.g. axvisor-qemu, starry), 'all' or 'list' (default: all)",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Output directory (default: <component>/test-results)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show debug output",
    )
    parser.add_argument(
        "--no-cleanup",
        action="store_true",
        help="Keep patched manifests and rewritten configs after the run",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the commands that would run without executing them",
    )
    parser.add_argument(
        "--sequential",
        action="store_true",
        help="Run targets one at a time",
    )
    parser.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="NAME",
        help="Skip a target or family (repeatable)",
    )
    parser.add_argument(
        "--no-hardware",
        action="store_true",
        help="Skip board targets that need physical hardware",
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> TestArgs:
    parsed = build_parser().parse_args(argv)
    return TestArgs(
        component_dir=parsed.component_dir,
        config=parsed.config,
        target=parsed.target,
        output=parsed.output,
        verbose=parsed.verbose,
        cleanup=not parsed.no_cleanup,
        dry_run=parsed.dry_run,
        sequential=parsed.sequential,
        exclude=list(parsed.exclude),
        hardware=not parsed.no_hardware,
    )


def check_dependencies(tools=REQUIRED_TOOLS) -> None:
    """Raise MissingDependency if a required host tool is not on PATH."""
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise MissingDependency(f"Required tool(s) not found: {', '.join(missing)}")


def list_targets(config: Configuration) -> None:
    console = get_console()
    console.print("Available test targets:")
    for target in config.targets:
        test_info = "build only" if target.test is None else target.kind.value
        console.print(f"  {target.name:<36} {target.family:<16} {test_info}")
    console.print(f"Families: {', '.join(config.families)}")


def _raise_interrupt(signum, frame) -> None:  # noqa: ARG001
    raise KeyboardInterrupt


def cleanup(options: RunOptions) -> None:
    """Restore every file mutated in the target checkouts."""
    if not options.cleanup or options.dry_run:
        return
    restored = restore_snapshots(options.repos_dir)
    if restored:
        log(f"Cleanup: restored {len(restored)} file(s)")


def run_tests(args: TestArgs) -> int:
    """Resolve the configuration, run the selected targets and report.

    Returns:
        Process exit status
    """
    component_dir = args.component_dir.resolve()
    if not component_dir.is_dir():
        log_error(f"Component directory not found: {component_dir}")
        return EXIT_FAILED

    try:
        config = resolve_config(args.config, component_dir)
    except ConfigInvalid as e:
        log_error(f"Invalid configuration: {e}")
        return EXIT_FAILED

    component = config.component
    log(f"Component: {component.name} ({component.crate_name})")

    if args.target == LIST_TARGETS:
        list_targets(config)
        return EXIT_OK

    if not args.dry_run:
        try:
            check_dependencies()
        except MissingDependency as e:
            log_error(str(e))
            return EXIT_FAILED

    selection = select(config, args.target)
    options = RunOptions(
        output_dir=(args.output or component_dir / "test-results").resolve(),
        dry_run=args.dry_run,
        verbose=args.verbose,
        cleanup=args.cleanup,
        parallel=not args.sequential,
        exclude=tuple(args.exclude),
        hardware=args.hardware,
    )
    options.output_dir.mkdir(parents=True, exist_ok=True)
    parallel = options.parallel and not selection.force_sequential and len(selection.names) > 1

    log(f"Targets: {' '.join(selection.names)}")
    log(f"Mode: {'parallel' if parallel else 'sequential'}, output: {options.output_dir}")

    registry = ProcessRegistry()
    runner = TargetRunner(config, options, supervisor=ProcessSupervisor(registry))
    aggregator = ResultAggregator(component=component.name, config_source=config.source)
    scheduler = Scheduler(runner, on_result=aggregator.add, registry=registry)

    interrupted = False
    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        scheduler.execute(selection.names, parallel)
    except KeyboardInterrupt:
        interrupted = True
        log_error("Interrupted, stopping all targets")
    finally:
        # Workers are joined by now; nothing can spawn once the registry is closed.
        killed = registry.kill_all()
        if killed:
            log_warning(f"Killed {killed} running process tree(s)")
        signal.signal(signal.SIGTERM, previous_handler)
        cleanup(options)

    report = aggregator.aggregate(order=selection.names)
    report_path = write_report(report, options.output_dir)
    render_summary(report)
    log(f"Report: {report_path}")

    if interrupted:
        return EXIT_INTERRUPTED
    if args.dry_run:
        log_success("Dry run complete")
        return EXIT_OK
    if report.exit_status == EXIT_OK:
        log_success("All targets passed!")
    return report.exit_status


def main(argv: Optional[List[str]] = None) -> int:
    """hvtest - hypervisor component integration tests."""
    args = parse_args(argv)

    init_timer()
    set_verbose(args.verbose)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    log_banner("Hypervisor Test Framework", __version__)

    try:
        return run_tests(args)
    except KeyboardInterrupt:
        log_error("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
