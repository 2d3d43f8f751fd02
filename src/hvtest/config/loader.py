"""Configuration resolution.

Resolution order for the configuration document:
    1. explicit path (--config)
    2. <component>/.github/config.json
    3. <component>/.test-config.json
    4. built-in default targets (hvtest/config/default_targets.json)

A supplied document without a `test_targets` key falls back to the complete
built-in list; there is no partial merge.
"""

from __future__ import annotations

import json
import logging
from importlib import resources
from pathlib import Path
from typing import Any

import tomlkit
from tomlkit.exceptions import TOMLKitError

from hvtest.config.models import ComponentIdentity, Configuration, PatchSpec, TestTarget
from hvtest.errors import ConfigInvalid
from hvtest.output import log

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_CANDIDATES = (Path(".github") / "config.json", Path(".test-config.json"))
DEFAULTS_RESOURCE = "default_targets.json"


def load_default_targets() -> list[dict[str, Any]]:
    """Load the built-in target list shipped as package data.

    Returns:
        List of raw target dictionaries.
    """
    pkg_files = resources.files(__package__)
    with pkg_files.joinpath(DEFAULTS_RESOURCE).open("r", encoding="utf-8") as f:
        return json.load(f)


def find_config_file(config_path: Path | None, component_dir: Path) -> Path | None:
    """Locate the configuration document to use.

    Args:
        config_path: Explicit path from the command line, if any
        component_dir: Component directory to search for per-repository configs

    Returns:
        Path to the configuration file, or None to use built-in defaults

    Raises:
        ConfigInvalid: If an explicit path was given but does not exist
    """
    if config_path is not None:
        if not config_path.is_file():
            raise ConfigInvalid(f"Configuration file not found: {config_path}")
        return config_path

    for candidate in DEFAULT_CONFIG_CANDIDATES:
        path = component_dir / candidate
        if path.is_file():
            logger.debug(f"Found per-repository config: {path}")
            return path
    return None


def detect_crate_name(component_dir: Path) -> str:
    """Read the crate name from the component's Cargo.toml, else use the directory name."""
    manifest = component_dir / "Cargo.toml"
    if manifest.is_file():
        try:
            doc = tomlkit.parse(manifest.read_text(encoding="utf-8"))
            package = doc.get("package")
            if package is not None and isinstance(package.get("name"), str):
                return str(package["name"])
        except (OSError, TOMLKitError) as e:
            logger.warning(f"Could not read crate name from {manifest}: {e}")
    return component_dir.name


def _read_document(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            document = json.load(f)
    except OSError as e:
        raise ConfigInvalid(f"Cannot read configuration {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigInvalid(f"Malformed configuration {path}: {e}") from e
    if not isinstance(document, dict):
        raise ConfigInvalid(f"Configuration {path} must be a JSON object")
    return document


def build_configuration(
    document: dict[str, Any],
    component_dir: Path,
    source: Path | None = None,
) -> Configuration:
    """Build a Configuration from a parsed document.

    Args:
        document: Parsed JSON configuration (may be empty)
        component_dir: Absolute component directory
        source: Path the document was read from, for reporting

    Returns:
        Resolved Configuration

    Raises:
        ConfigInvalid: If the document content is invalid
    """
    component_data = document.get("component") or {}
    if not isinstance(component_data, dict):
        raise ConfigInvalid("'component' must be an object")

    crate_name = component_data.get("crate_name") or detect_crate_name(component_dir)
    component = ComponentIdentity(
        name=str(component_data.get("name") or crate_name),
        crate_name=str(crate_name),
        directory=component_dir,
    )

    patch_data = document.get("patch") or {}
    if not isinstance(patch_data, dict):
        raise ConfigInvalid("'patch' must be an object")
    patch_defaults = PatchSpec(
        section=str(patch_data.get("section") or PatchSpec.section),
        path_template=str(patch_data.get("path_template") or PatchSpec.path_template),
    )

    uses_defaults = "test_targets" not in document
    if uses_defaults:
        raw_targets = load_default_targets()
    else:
        raw_targets = document["test_targets"]
        if not isinstance(raw_targets, list):
            raise ConfigInvalid("'test_targets' must be a list")

    targets = tuple(TestTarget.from_dict(item, patch_defaults) for item in raw_targets)
    return Configuration(component=component, targets=targets, source=source, uses_defaults=uses_defaults)


def resolve_config(config_path: Path | None, component_dir: Path) -> Configuration:
    """Resolve the configuration for a component.

    Args:
        config_path: Explicit configuration path hint, or None
        component_dir: Component directory

    Returns:
        Resolved Configuration

    Raises:
        ConfigInvalid: If the configuration is malformed or unreadable
    """
    component_dir = component_dir.resolve()
    path = find_config_file(config_path, component_dir)

    if path is None:
        log("No configuration file found, using built-in test targets")
        return build_configuration({}, component_dir)

    log(f"Loading configuration: {path}")
    document = _read_document(path)
    if "test_targets" not in document:
        log("Configuration has no test_targets, using built-in test targets")
    return build_configuration(document, component_dir, source=path)
