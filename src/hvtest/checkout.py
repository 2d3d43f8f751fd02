"""Target repository checkouts and restorable file snapshots.

Each target is cloned once into <output>/repos/<name>. Later runs reuse the
checkout and only attempt a best-effort `git pull`.

Files that hvtest mutates inside a checkout (Cargo.toml, .build.toml, VM and
QEMU configs) are snapshotted to "<file>.hvtest-orig" before the first write.
Cleanup moves every snapshot back, leaving the checkout as it was cloned.
"""

import logging
import shutil
from pathlib import Path
from typing import List, Optional

from hvtest.config.models import TestTarget
from hvtest.errors import CloneFailed
from hvtest.output import log, log_warning
from hvtest.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

SNAPSHOT_SUFFIX = ".hvtest-orig"

# Seconds allowed for a shallow clone including submodules.
CLONE_TIMEOUT = 30 * 60
PULL_TIMEOUT = 5 * 60


def snapshot_file(path: Path) -> Optional[Path]:
    """Save a pristine copy of a file before it is first modified.

    The snapshot is taken only once, so repeated calls keep the original.

    Args:
        path: File about to be rewritten

    Returns:
        Path of the snapshot, or None when the file does not exist
    """
    if not path.is_file():
        return None
    snapshot = path.with_name(path.name + SNAPSHOT_SUFFIX)
    if not snapshot.exists():
        shutil.copy2(path, snapshot)
        logger.debug(f"Snapshotted {path}")
    return snapshot


def restore_snapshots(root: Path) -> List[Path]:
    """Restore every snapshotted file below a directory.

    Args:
        root: Directory to scan (usually the repos/ directory)

    Returns:
        Files that were restored
    """
    restored: List[Path] = []
    if not root.is_dir():
        return restored
    for snapshot in sorted(root.rglob(f"*{SNAPSHOT_SUFFIX}")):
        original = snapshot.with_name(snapshot.name[: -len(SNAPSHOT_SUFFIX)])
        try:
            shutil.move(str(snapshot), str(original))
            restored.append(original)
        except OSError as e:
            log_warning(f"Could not restore {original}: {e}")
    return restored


class GitCheckout:
    """Clones and updates target repositories through the process supervisor."""

    def __init__(self, supervisor: ProcessSupervisor):
        self.supervisor = supervisor

    def ensure(self, target: TestTarget, dest: Path, log_path: Path, dry_run: bool = False) -> Path:
        """Make sure a checkout of the target's repository exists.

        Args:
            target: Target whose repository to fetch
            dest: Checkout directory
            log_path: Target log file receiving git output
            dry_run: Only print the commands

        Returns:
            The checkout directory

        Raises:
            CloneFailed: If the clone or submodule update fails
        """
        source = target.source
        if (dest / ".git").exists():
            if dry_run:
                log(f"  Would run: git pull (in {dest})")
                return dest
            log(f"  Updating existing checkout {dest}")
            outcome = self.supervisor.run("git pull", dest, PULL_TIMEOUT, log_path)
            if not outcome.success:
                # Offline runners still test the last fetched revision.
                log_warning(f"  git pull failed ({outcome.reason}), continuing with existing checkout")
            return dest

        clone = f"git clone --depth 1 -b {source.branch} {source.url} {dest}"
        if dry_run:
            log(f"  Would run: {clone}")
            return dest

        log(f"  Cloning {source.url} ({source.branch})")
        dest.parent.mkdir(parents=True, exist_ok=True)
        if dest.exists():
            shutil.rmtree(dest)
        outcome = self.supervisor.run(clone, dest.parent, CLONE_TIMEOUT, log_path)
        if not outcome.success:
            raise CloneFailed(f"Failed to clone {source.url} ({outcome.reason})")

        if (dest / ".gitmodules").is_file():
            log("  Initializing submodules")
            outcome = self.supervisor.run("git submodule update --init --recursive", dest, CLONE_TIMEOUT, log_path)
            if not outcome.success:
                raise CloneFailed(f"Failed to update submodules of {source.url} ({outcome.reason})")
        return dest
