"""Unit tests for structured configuration rewrites."""

from pathlib import Path

import pytest
import tomlkit

from hvtest.checkout import SNAPSHOT_SUFFIX
from hvtest.errors import RewriteFailed
from hvtest.rewrites import (
    configure_qemu_rootfs,
    rewrite_build_toml,
    rewrite_vm_config_for_board,
    rewrite_vm_config_for_emulator,
)

BUILD_TOML = """\
# generated by cargo xtask defconfig
target = "aarch64-unknown-none-softfloat"
features = [
    "ept-level-4",
    "fs",
]
log = "Info"
vm_configs = []
"""

VM_CONFIG_MEMORY = """\
[base]
id = 1
name = "arceos"

[kernel]
entry_point = 0x8020_0000
image_location = "memory"
kernel_path = "/old/path/arceos.bin"
"""

VM_CONFIG_FS = VM_CONFIG_MEMORY.replace('"memory"', '"fs"')

QEMU_CONFIG = """\
# QEMU runtime config
args = [
    "-nographic",
    "-device",
    "virtio-blk-device,drive=disk0",
    "-drive",
    "id=disk0,if=none,format=raw,file=${workspaceFolder}/tmp/rootfs.img",
    "-append",
    "root=/dev/vda rw init=/init",
]
success_regex = []
"""


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


class TestBuildToml:
    """Board .build.toml rewrite."""

    def test_replaces_features_and_vm_configs(self, tmp_path):
        """features and vm_configs are replaced, other keys are preserved."""
        path = _write(tmp_path / ".build.toml", BUILD_TOML)

        rewrite_build_toml(path, ["configs/vms/arceos-aarch64-e2000-smp1.toml"])

        doc = tomlkit.parse(path.read_text(encoding="utf-8"))
        assert list(doc["features"]) == ["dyn-plat", "axstd/bus-mmio"]
        assert list(doc["vm_configs"]) == ["configs/vms/arceos-aarch64-e2000-smp1.toml"]
        assert doc["target"] == "aarch64-unknown-none-softfloat"
        assert doc["log"] == "Info"
        assert "# generated by cargo xtask defconfig" in path.read_text(encoding="utf-8")

    def test_adds_missing_vm_configs(self, tmp_path):
        """vm_configs is added when the generated file lacks it."""
        path = _write(tmp_path / ".build.toml", 'log = "Info"\n')
        rewrite_build_toml(path, ["a.toml", "b.toml"])
        doc = tomlkit.parse(path.read_text(encoding="utf-8"))
        assert list(doc["vm_configs"]) == ["a.toml", "b.toml"]

    def test_missing_file_raises(self, tmp_path):
        """A missing .build.toml fails the rewrite."""
        with pytest.raises(RewriteFailed, match="not found"):
            rewrite_build_toml(tmp_path / ".build.toml", [])

    def test_snapshot_written(self, tmp_path):
        """The generated file is snapshotted before it is rewritten."""
        path = _write(tmp_path / ".build.toml", BUILD_TOML)
        rewrite_build_toml(path, [])
        assert (tmp_path / f".build.toml{SNAPSHOT_SUFFIX}").read_text(encoding="utf-8") == BUILD_TOML


class TestVmConfig:
    """Guest VM config rewrites."""

    def test_emulator_memory_mode_rewritten(self, tmp_path):
        """Memory-mode configs point at the cached kernel."""
        path = _write(tmp_path / "vm.toml", VM_CONFIG_MEMORY)

        changed = rewrite_vm_config_for_emulator(path, Path("/cache/qemu_aarch64_arceos/qemu-aarch64"))

        assert changed
        doc = tomlkit.parse(path.read_text(encoding="utf-8"))
        assert doc["kernel"]["kernel_path"] == "/cache/qemu_aarch64_arceos/qemu-aarch64"
        assert doc["kernel"]["entry_point"] == 0x8020_0000

    def test_emulator_fs_mode_untouched(self, tmp_path):
        """Filesystem-mode configs are left alone for emulators."""
        path = _write(tmp_path / "vm.toml", VM_CONFIG_FS)

        changed = rewrite_vm_config_for_emulator(path, Path("/cache/x/qemu-aarch64"))

        assert not changed
        assert path.read_text(encoding="utf-8") == VM_CONFIG_FS

    @pytest.mark.parametrize("text", [VM_CONFIG_MEMORY, VM_CONFIG_FS])
    def test_board_forces_memory_mode(self, tmp_path, text):
        """Board configs always load the guest from memory."""
        path = _write(tmp_path / "vm.toml", text)

        rewrite_vm_config_for_board(path, Path("/cache/phytiumpi_arceos/phytiumpi"))

        doc = tomlkit.parse(path.read_text(encoding="utf-8"))
        assert doc["kernel"]["image_location"] == "memory"
        assert doc["kernel"]["kernel_path"] == "/cache/phytiumpi_arceos/phytiumpi"
        assert doc["base"]["name"] == "arceos"


class TestQemuRootfs:
    """QEMU root filesystem wiring."""

    def test_points_drive_at_cached_rootfs(self, tmp_path):
        """The placeholder drive file is replaced by the cached image."""
        path = _write(tmp_path / "qemu.toml", QEMU_CONFIG)

        configure_qemu_rootfs(path, Path("/cache/img/rootfs.img"))

        args = list(tomlkit.parse(path.read_text(encoding="utf-8"))["args"])
        assert "id=disk0,if=none,format=raw,file=/cache/img/rootfs.img" in args
        assert "root=/dev/vda rw init=/init" in args

    def test_strips_disk_without_rootfs(self, tmp_path):
        """Without a rootfs the disk device, drive and root argument are removed."""
        path = _write(tmp_path / "qemu.toml", QEMU_CONFIG)

        configure_qemu_rootfs(path, None)

        text = path.read_text(encoding="utf-8")
        args = list(tomlkit.parse(text)["args"])
        assert args == ["-nographic", "-append", "init=/init"]
        assert "# QEMU runtime config" in text

    def test_second_application_is_noop(self, tmp_path):
        """Re-running the rewrite does not change the file again."""
        path = _write(tmp_path / "qemu.toml", QEMU_CONFIG)
        configure_qemu_rootfs(path, None)
        once = path.read_bytes()

        configure_qemu_rootfs(path, None)

        assert path.read_bytes() == once
