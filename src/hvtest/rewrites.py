"""Structured rewrites of target configuration files.

Before a test run hvtest adjusts a few TOML files inside the target checkout:

- .build.toml (boards): feature list and the VM configs to embed
- guest VM configs: where the guest kernel image is loaded from
- QEMU runtime config (emulators): the root filesystem drive

All edits go through tomlkit so that comments and unrelated keys survive, and
every file is snapshotted before its first modification.
"""

import logging
from pathlib import Path
from typing import Optional, Sequence

import tomlkit
from tomlkit.container import Container
from tomlkit.exceptions import TOMLKitError
from tomlkit.items import Array, Table

from hvtest.checkout import snapshot_file
from hvtest.errors import RewriteFailed

logger = logging.getLogger(__name__)

BOARD_FEATURES = ("dyn-plat", "axstd/bus-mmio")
IMAGE_LOCATION_MEMORY = "memory"

# QEMU rootfs placeholder used by the downstream configs.
ROOTFS_PLACEHOLDER = "${workspaceFolder}/tmp/rootfs.img"
ROOTFS_DEVICE = "virtio-blk-device,drive=disk0"
ROOTFS_DRIVE_PREFIX = "id=disk0,"
ROOTFS_KERNEL_ARG = "root=/dev/vda rw "


def _load(path: Path) -> tomlkit.TOMLDocument:
    try:
        return tomlkit.parse(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise RewriteFailed(f"Cannot read {path}: {e}") from e
    except TOMLKitError as e:
        raise RewriteFailed(f"Cannot parse {path}: {e}") from e


def _save(path: Path, doc: tomlkit.TOMLDocument) -> None:
    rendered = tomlkit.dumps(doc)
    try:
        if path.read_text(encoding="utf-8") == rendered:
            return
    except OSError:
        pass
    snapshot_file(path)
    try:
        path.write_text(rendered, encoding="utf-8")
    except OSError as e:
        raise RewriteFailed(f"Cannot write {path}: {e}") from e


def find_table_with_key(container: Container | Table, key: str) -> Optional[Container | Table]:
    """Return the first table (depth first, document order) that holds a key."""
    if key in container:
        return container
    for value in container.values():
        if isinstance(value, Table):
            found = find_table_with_key(value, key)
            if found is not None:
                return found
    return None


def _string_array(values: Sequence[str]) -> Array:
    array = tomlkit.array()
    for value in values:
        array.append(value)
    array.multiline(True)
    return array


def rewrite_build_toml(path: Path, vmconfigs: Sequence[str]) -> None:
    """Set the board feature list and VM configs in a generated .build.toml.

    Args:
        path: .build.toml produced by `cargo xtask defconfig`
        vmconfigs: VM config paths relative to the checkout

    Raises:
        RewriteFailed: If the file is missing or cannot be rewritten
    """
    if not path.is_file():
        raise RewriteFailed(f"{path.name} not found at {path}")
    doc = _load(path)
    doc["features"] = _string_array(BOARD_FEATURES)
    doc["vm_configs"] = _string_array(vmconfigs)
    _save(path, doc)
    logger.debug(f"Updated {path}: features={list(BOARD_FEATURES)} vm_configs={list(vmconfigs)}")


def rewrite_vm_config_for_emulator(path: Path, kernel_path: Path) -> bool:
    """Point a memory-mode guest config at a cached kernel image.

    Configs that load the guest from the filesystem are left untouched.

    Args:
        path: Guest VM config
        kernel_path: Kernel image inside the image cache

    Returns:
        True if kernel_path was rewritten
    """
    doc = _load(path)
    table = find_table_with_key(doc, "image_location")
    if table is None or table["image_location"] != IMAGE_LOCATION_MEMORY:
        logger.debug(f"{path}: not a memory-mode config, leaving kernel_path alone")
        return False
    table["kernel_path"] = str(kernel_path)
    _save(path, doc)
    return True


def rewrite_vm_config_for_board(path: Path, kernel_path: Path) -> None:
    """Force a guest config to memory mode and point it at a cached kernel image.

    Boards have no filesystem the hypervisor could load the guest from, so
    "fs" or unknown locations are switched to memory.
    """
    doc = _load(path)
    table = find_table_with_key(doc, "kernel_path") or find_table_with_key(doc, "image_location")
    if table is None:
        table = doc.get("kernel")
        if table is None:
            table = tomlkit.table()
            doc["kernel"] = table
    if table.get("image_location") != IMAGE_LOCATION_MEMORY:
        logger.debug(f"{path}: image_location {table.get('image_location')!r} -> memory")
    table["image_location"] = IMAGE_LOCATION_MEMORY
    table["kernel_path"] = str(kernel_path)
    _save(path, doc)


def _rewrite_args(args: list[str], rootfs_img: Optional[Path]) -> list[str]:
    if rootfs_img is not None:
        return [arg.replace(ROOTFS_PLACEHOLDER, str(rootfs_img)) for arg in args]

    result: list[str] = []
    skip_next = False
    for index, arg in enumerate(args):
        if skip_next:
            skip_next = False
            continue
        following = args[index + 1] if index + 1 < len(args) else ""
        if arg == "-device" and following == ROOTFS_DEVICE:
            skip_next = True
            continue
        if arg == "-drive" and following.startswith(ROOTFS_DRIVE_PREFIX):
            skip_next = True
            continue
        result.append(arg.replace(ROOTFS_KERNEL_ARG, ""))
    return result


def configure_qemu_rootfs(path: Path, rootfs_img: Optional[Path]) -> None:
    """Attach a cached root filesystem to the QEMU config, or remove the disk.

    Args:
        path: QEMU runtime config (TOML with an `args` array)
        rootfs_img: Cached rootfs.img, or None when the image ships no rootfs
    """
    doc = _load(path)
    table = find_table_with_key(doc, "args")
    if table is None:
        logger.debug(f"{path}: no args array, nothing to configure")
        return
    args = [str(arg) for arg in table["args"]]
    rewritten = _rewrite_args(args, rootfs_img)
    if rewritten != args:
        table["args"] = _string_array(rewritten)
        _save(path, doc)
