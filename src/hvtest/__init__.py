"""hvtest - integration test orchestration for hypervisor components.

Vendors a local component crate into a set of downstream projects, builds
them, runs them under QEMU or on a development board and classifies each
outcome as passed, failed or skipped.

Example:
    >>> from pathlib import Path
    >>> from hvtest.config import resolve_config, select
    >>>
    >>> config = resolve_config(None, Path("."))
    >>> selection = select(config, "axvisor-qemu")
    >>> print(selection.names)
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
