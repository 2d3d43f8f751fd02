"""Kind-specific build and test preparation.

The runner drives every target through the same phases; what differs between
an emulated session and a physical board lives in a TargetStrategy:

- EmulatorStrategy: for hypervisor targets, install ostool, fetch guest
  images, point memory-mode VM configs at the cached kernels and wire the
  QEMU root filesystem; append --build-config/--qemu-config/--vmconfigs.
- BoardStrategy: generate and adjust .build.toml before the build; for the
  test, install ostool, prepare the TFTP directory, fetch images, force VM
  configs to memory mode and make sure .uboot.toml exists.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from hvtest.config.models import TargetKind, TestTarget
from hvtest.errors import BuildFailed, RewriteFailed, TestFailed
from hvtest.hardware import provision_uboot_config
from hvtest.images import ImageCache
from hvtest.output import log, log_success
from hvtest.rewrites import (
    configure_qemu_rootfs,
    rewrite_build_toml,
    rewrite_vm_config_for_board,
    rewrite_vm_config_for_emulator,
)
from hvtest.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

OSTOOL_INSTALL_COMMAND = "cargo +stable install ostool --version ^0.8"
OSTOOL_INSTALL_TIMEOUT = 30 * 60
BUILD_TOML_NAME = ".build.toml"


@dataclass
class TargetContext:
    """Everything a strategy needs to prepare one target.

    Attributes:
        target: Target being run
        checkout: Target checkout directory
        log_path: Target log file
        supervisor: Supervisor for auxiliary commands
        image_cache: Shared guest image cache
        dry_run: Print intended actions instead of performing them
        prompt: Input function for interactive board provisioning
    """

    target: TestTarget
    checkout: Path
    log_path: Path
    supervisor: ProcessSupervisor
    image_cache: ImageCache
    dry_run: bool = False
    prompt: Optional[Callable[[str], str]] = None

    def run_step(self, command: str, timeout: float, error: type, what: str) -> None:
        """Run an auxiliary command in the checkout, raising `error` on failure."""
        if self.dry_run:
            log(f"  Would run: {command}")
            return
        outcome = self.supervisor.run(command, self.checkout, timeout, self.log_path)
        if not outcome.success:
            raise error(f"{what} failed ({outcome.reason})", timed_out=outcome.timed_out, exit_code=outcome.exit_code)


class TargetStrategy:
    """Base strategy: no preparation, the test command is used as configured."""

    kind: TargetKind

    def prepare_build(self, ctx: TargetContext) -> None:
        """Prepare the checkout before the build command runs."""
        pass

    def prepare_test(self, ctx: TargetContext) -> str:
        """Prepare the checkout for the test phase and return the full test command."""
        assert ctx.target.test is not None
        return ctx.target.expand(ctx.target.test.command)

    def ensure_ostool(self, ctx: TargetContext) -> None:
        if shutil.which("ostool") is not None:
            return
        log("  Installing ostool")
        ctx.run_step(OSTOOL_INSTALL_COMMAND, OSTOOL_INSTALL_TIMEOUT, TestFailed, "ostool installation")

    def fetch_images(self, ctx: TargetContext) -> list[tuple[Path, Path]]:
        """Download each guest image and return (vm config path, image dir) pairs.

        Pairs whose VM config is missing from the checkout are dropped.
        """
        assert ctx.target.test is not None
        pairs: list[tuple[Path, Path]] = []
        for config, image in ctx.target.test.image_pairs():
            config_path = ctx.checkout / config
            image_dir = ctx.image_cache.path_for(image)
            if ctx.dry_run:
                log(f"  Would fetch image {image} into {image_dir}")
                continue
            if not config_path.is_file():
                logger.warning(f"VM config {config} not found in {ctx.checkout}")
                log(f"  VM config not found: {config}")
                continue
            image_dir = ctx.image_cache.ensure(image, ctx.checkout, ctx.supervisor, ctx.log_path)
            pairs.append((config_path, image_dir))
        return pairs


class EmulatorStrategy(TargetStrategy):
    kind = TargetKind.EMULATOR

    def prepare_test(self, ctx: TargetContext) -> str:
        target = ctx.target
        test = target.test
        assert test is not None
        command = target.expand(test.command)
        # Plain emulator targets (e.g. starry) need no hypervisor plumbing.
        if not (test.qemu_config or test.vmconfigs):
            return command

        self.ensure_ostool(ctx)
        rootfs_img: Optional[Path] = None
        try:
            for config_path, image_dir in self.fetch_images(ctx):
                kernel = image_dir / f"qemu-{target.architecture}"
                if rewrite_vm_config_for_emulator(config_path, kernel):
                    log(f"  kernel_path -> {kernel}")
                candidate = image_dir / "rootfs.img"
                if rootfs_img is None and candidate.is_file():
                    rootfs_img = candidate

            qemu_config = ctx.checkout / test.qemu_config if test.qemu_config else None
            if qemu_config is not None and qemu_config.is_file() and not ctx.dry_run:
                configure_qemu_rootfs(qemu_config, rootfs_img)
                if rootfs_img is not None:
                    log(f"  Root filesystem: {rootfs_img}")
                else:
                    log("  No rootfs.img in image, removed disk from QEMU config")
        except RewriteFailed as e:
            raise TestFailed(str(e)) from e

        if test.build_config:
            command += f" --build-config {test.build_config}"
        if test.qemu_config:
            command += f" --qemu-config {test.qemu_config}"
        if test.vmconfigs:
            command += f" --vmconfigs {','.join(test.vmconfigs)}"
        return command


class BoardStrategy(TargetStrategy):
    kind = TargetKind.BOARD

    def prepare_build(self, ctx: TargetContext) -> None:
        target = ctx.target
        vmconfigs = target.test.vmconfigs if target.test is not None else ()

        log(f"  Generating board config: cargo xtask defconfig {target.board}")
        ctx.run_step(f"cargo xtask defconfig {target.board}", target.build.timeout, BuildFailed, "defconfig")
        if ctx.dry_run:
            log(f"  Would update {BUILD_TOML_NAME}: features, vm_configs={list(vmconfigs)}")
            return
        try:
            rewrite_build_toml(ctx.checkout / BUILD_TOML_NAME, vmconfigs)
        except RewriteFailed as e:
            raise BuildFailed(str(e)) from e
        log_success(f"  {BUILD_TOML_NAME} updated")

    def prepare_test(self, ctx: TargetContext) -> str:
        target = ctx.target
        test = target.test
        assert test is not None

        self.ensure_ostool(ctx)
        bin_dir = Path(test.bin_dir)
        if ctx.dry_run:
            log(f"  Would create TFTP directory {bin_dir}")
        else:
            bin_dir.mkdir(parents=True, exist_ok=True)
            log(f"  TFTP directory ready: {bin_dir}")

        try:
            for config_path, image_dir in self.fetch_images(ctx):
                kernel = image_dir / target.board
                rewrite_vm_config_for_board(config_path, kernel)
                log(f"  kernel_path -> {kernel}")
        except RewriteFailed as e:
            raise TestFailed(str(e)) from e

        if ctx.dry_run:
            log("  Would check U-Boot settings (.uboot.toml)")
        else:
            template = ctx.checkout / test.uboot_config if test.uboot_config else None
            provision_uboot_config(ctx.checkout, template=template, prompt=ctx.prompt)
        return target.expand(test.command)


_STRATEGIES = {
    TargetKind.EMULATOR: EmulatorStrategy(),
    TargetKind.BOARD: BoardStrategy(),
}


def strategy_for(kind: TargetKind) -> TargetStrategy:
    """Return the strategy handling a target kind."""
    return _STRATEGIES[kind]
