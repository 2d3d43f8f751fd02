"""Unit tests for the guest image cache."""

import threading
from unittest.mock import MagicMock

import pytest

from hvtest.errors import TestFailed
from hvtest.images import DEFAULT_IMAGE_DIR, ImageCache, default_image_dir
from hvtest.supervisor import Outcome, OutcomeKind

OK = Outcome(OutcomeKind.SUCCESS, exit_code=0)


def test_default_image_dir(monkeypatch):
    """The cache defaults to /tmp/.axvisor-images."""
    monkeypatch.delenv("HVTEST_IMAGE_DIR", raising=False)
    assert default_image_dir() == DEFAULT_IMAGE_DIR


def test_image_dir_override(monkeypatch, tmp_path):
    """HVTEST_IMAGE_DIR relocates the cache."""
    monkeypatch.setenv("HVTEST_IMAGE_DIR", str(tmp_path))
    assert ImageCache().root == tmp_path


def test_cached_image_is_not_downloaded(tmp_path):
    """An existing image directory is used as is."""
    (tmp_path / "qemu_aarch64_arceos").mkdir()
    supervisor = MagicMock()

    path = ImageCache(tmp_path).ensure("qemu_aarch64_arceos", tmp_path, supervisor, tmp_path / "t.log")

    assert path == tmp_path / "qemu_aarch64_arceos"
    supervisor.run.assert_not_called()


def test_missing_image_is_downloaded(tmp_path):
    """Missing images are fetched with the xtask download command in the checkout."""
    checkout = tmp_path / "checkout"
    checkout.mkdir()
    supervisor = MagicMock()
    supervisor.run.return_value = OK

    ImageCache(tmp_path / "cache").ensure("qemu_x86_64_nimbos", checkout, supervisor, tmp_path / "t.log")

    command, cwd = supervisor.run.call_args[0][:2]
    assert command == "cargo xtask image download qemu_x86_64_nimbos"
    assert cwd == checkout


def test_download_failure_raises(tmp_path):
    """A failed download fails the test phase."""
    supervisor = MagicMock()
    supervisor.run.return_value = Outcome(OutcomeKind.FAILURE, exit_code=1, reason="exit code 1")

    with pytest.raises(TestFailed, match="Image download failed"):
        ImageCache(tmp_path).ensure("img", tmp_path, supervisor, tmp_path / "t.log")


def test_concurrent_requests_download_once(tmp_path):
    """Parallel targets asking for the same image share one download."""
    cache = ImageCache(tmp_path / "cache")
    calls = []

    def fake_run(command, cwd, timeout, log_path):
        calls.append(command)
        (tmp_path / "cache" / "shared").mkdir(parents=True)
        return OK

    supervisor = MagicMock()
    supervisor.run.side_effect = fake_run

    threads = [threading.Thread(target=cache.ensure, args=("shared", tmp_path, supervisor, tmp_path / "t.log")) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(calls) == 1
