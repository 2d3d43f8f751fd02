"""Shared guest image cache.

Guest images (kernels, root filesystems) are large and identical across
targets, so they are downloaded once into a cache directory shared by every
run on the host:

    /tmp/.axvisor-images/<image name>/qemu-aarch64
    /tmp/.axvisor-images/<image name>/rootfs.img

The cache is create-only. An existing <image name> directory means the image
is present; nothing is ever evicted.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional

from hvtest.errors import TestFailed
from hvtest.output import log, log_success
from hvtest.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_DIR = Path("/tmp/.axvisor-images")
IMAGE_DIR_ENV = "HVTEST_IMAGE_DIR"
DEFAULT_DOWNLOAD_COMMAND = "cargo xtask image download {image}"
DOWNLOAD_TIMEOUT = 30 * 60


def default_image_dir() -> Path:
    """Return the cache root, honouring the HVTEST_IMAGE_DIR override."""
    override = os.environ.get(IMAGE_DIR_ENV)
    return Path(override) if override else DEFAULT_IMAGE_DIR


class ImageCache:
    """Download-once cache of guest images keyed by image name."""

    def __init__(self, root: Optional[Path] = None, download_command: str = DEFAULT_DOWNLOAD_COMMAND):
        self.root = root if root is not None else default_image_dir()
        self.download_command = download_command
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, name: str) -> Path:
        return self.root / name

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def ensure(
        self,
        name: str,
        checkout: Path,
        supervisor: ProcessSupervisor,
        log_path: Path,
        timeout: float = DOWNLOAD_TIMEOUT,
    ) -> Path:
        """Make sure an image is in the cache, downloading it if needed.

        Parallel targets asking for the same image wait for a single download.

        Args:
            name: Image name
            checkout: Target checkout the download command runs in
            supervisor: Supervisor used to run the download
            log_path: Target log file
            timeout: Download deadline in seconds

        Returns:
            Directory holding the image files

        Raises:
            TestFailed: If the download fails
        """
        image_dir = self.path_for(name)
        with self._lock_for(name):
            if image_dir.is_dir():
                log(f"  Image cached: {image_dir}")
                return image_dir

            self.root.mkdir(parents=True, exist_ok=True)
            log(f"  Downloading image {name}")
            command = self.download_command.format(image=name)
            outcome = supervisor.run(command, checkout, timeout, log_path)
            if not outcome.success:
                raise TestFailed(f"Image download failed: {name} ({outcome.reason})", timed_out=outcome.timed_out)
            if not image_dir.is_dir():
                logger.warning(f"Download of {name} succeeded but {image_dir} does not exist")
            log_success(f"  Image downloaded: {name}")
            return image_dir
