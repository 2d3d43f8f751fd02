"""Dependency patcher.

Binds the component under test into a target's Cargo manifest through a
`[patch.<section>]` entry so that the target builds against the local checkout
instead of the published crate:

    [patch.crates-io]
    my-crate = { path = "/abs/path/to/component" }

The manifest is edited with tomlkit, so comments, ordering and formatting of
everything else are preserved. Re-applying the patch is a no-op and leaves the
file byte-identical.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import tomlkit
from tomlkit.exceptions import TOMLKitError

from hvtest.checkout import snapshot_file
from hvtest.config.models import ComponentIdentity
from hvtest.errors import ManifestMissing, PatchFailed
from hvtest.output import log, log_warning

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatchResult:
    """Outcome of a patch application.

    Attributes:
        applied: True if the manifest was written, False if the binding already existed
        section: Patch section the component is bound in
        path: Override path written (or found) for the component
    """

    applied: bool
    section: str
    path: Path


def resolve_override_path(checkout_dir: Path, template: str, component_dir: Path) -> Path:
    """Resolve the path the component override should point to.

    Relative templates resolve against the target checkout. When the resolved
    directory does not exist the component directory itself is used.

    Args:
        checkout_dir: Target checkout directory
        template: Path template from the patch configuration
        component_dir: Absolute component directory

    Returns:
        Absolute override path
    """
    candidate = Path(template)
    if not candidate.is_absolute():
        candidate = checkout_dir / candidate
    candidate = candidate.resolve()
    if candidate.is_dir():
        return candidate

    logger.debug(f"Override path {candidate} does not exist")
    log_warning(f"  Override path {template!r} not found, using component directory {component_dir}")
    return component_dir.resolve()


def _existing_binding(doc: tomlkit.TOMLDocument, crate_name: str) -> tuple[str, str] | None:
    """Return (section, path) of an existing binding for the crate in any patch table."""
    patch = doc.get("patch")
    if patch is None or not hasattr(patch, "items"):
        return None
    for section, table in patch.items():
        if hasattr(table, "get") and crate_name in table:
            binding = table.get(crate_name)
            path = binding.get("path", "") if hasattr(binding, "get") else ""
            return str(section), str(path)
    return None


def apply_patch(
    checkout_dir: Path,
    manifest_path: Path,
    component: ComponentIdentity,
    section: str,
    override_path: Path,
) -> PatchResult:
    """Bind the component into a target manifest.

    Args:
        checkout_dir: Target checkout directory
        manifest_path: Manifest to edit (usually <checkout>/Cargo.toml)
        component: Component identity
        section: Patch section name (e.g. "crates-io" or a git URL)
        override_path: Absolute path the binding points to

    Returns:
        PatchResult describing what was done

    Raises:
        ManifestMissing: If the manifest does not exist or cannot be read
        PatchFailed: If the manifest cannot be parsed or written
    """
    if not manifest_path.is_absolute():
        manifest_path = checkout_dir / manifest_path
    if not manifest_path.is_file():
        raise ManifestMissing(f"Manifest not found: {manifest_path}")

    try:
        text = manifest_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestMissing(f"Cannot read manifest {manifest_path}: {e}") from e

    try:
        doc = tomlkit.parse(text)
    except TOMLKitError as e:
        raise PatchFailed(f"Cannot parse manifest {manifest_path}: {e}") from e

    existing = _existing_binding(doc, component.crate_name)
    if existing is not None:
        found_section, found_path = existing
        log(f"  {component.crate_name} already patched in [patch.{found_section}]")
        return PatchResult(applied=False, section=found_section, path=Path(found_path or override_path))

    try:
        patch = doc.get("patch")
        if patch is None:
            patch = tomlkit.table(is_super_table=True)
            doc.add("patch", patch)
        section_table = patch.get(section)
        if section_table is None:
            section_table = tomlkit.table()
            patch.add(section, section_table)

        binding = tomlkit.inline_table()
        binding.append("path", str(override_path))
        section_table.add(component.crate_name, binding)
        rendered = tomlkit.dumps(doc)
    except (TOMLKitError, AttributeError) as e:
        raise PatchFailed(f"Cannot add [patch.{section}] binding to {manifest_path}: {e}") from e

    snapshot_file(manifest_path)
    try:
        manifest_path.write_text(rendered, encoding="utf-8")
    except OSError as e:
        raise PatchFailed(f"Cannot write manifest {manifest_path}: {e}") from e

    log(f"  Patched [patch.{section}] {component.crate_name} -> {override_path}")
    return PatchResult(applied=True, section=section, path=override_path)
