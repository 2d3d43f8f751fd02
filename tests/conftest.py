"""Pytest configuration and fixtures for hvtest tests.

Console output is redirected into a buffer for every test so the rich console
never writes to pytest's captured (and possibly closed) stdout. Tests that
assert on user-facing output use the `console_output` fixture.
"""

import io
import sys
import warnings
from pathlib import Path

import pytest

from hvtest import output

# Suppress ResourceWarnings from pipe cleanup of killed subprocesses in Python 3.13
if sys.version_info >= (3, 13):
    warnings.filterwarnings("ignore", category=ResourceWarning)


@pytest.fixture(autouse=True)
def console_output():
    """Route hvtest console output into a StringIO for the duration of a test."""
    buffer = io.StringIO()
    output.init_timer(buffer)
    output.set_verbose(False)
    yield buffer
    output.set_verbose(False)


@pytest.fixture(autouse=True)
def _restore_stdio():  # noqa: PT004
    """Ensure stdout/stderr are always restored after each test."""
    yield

    if sys.stdout.closed:
        sys.stdout = sys.__stdout__
    if sys.stderr.closed:
        sys.stderr = sys.__stderr__


@pytest.fixture
def component_dir(tmp_path: Path) -> Path:
    """A component crate checkout named `axvcpu`."""
    path = tmp_path / "axvcpu"
    path.mkdir()
    (path / "Cargo.toml").write_text('[package]\nname = "axvcpu"\nversion = "0.1.0"\n', encoding="utf-8")
    return path


@pytest.fixture
def target_manifest() -> str:
    """A downstream manifest with comments and an unrelated patch binding."""
    return (
        "# Downstream workspace\n"
        "[package]\n"
        'name = "axvisor"\n'
        'version = "0.1.0"\n'
        "\n"
        "[dependencies]\n"
        'axvcpu = "0.1"  # published release\n'
        'log = "0.4"\n'
        "\n"
        "[patch.crates-io]\n"
        'other = { path = "../other" }\n'
    )
