"""Target registry: configuration models, resolution and selection.

The built-in target list lives in default_targets.json next to this module and
is loaded with importlib.resources so it also works from an installed wheel.
"""

from hvtest.config.loader import build_configuration, load_default_targets, resolve_config
from hvtest.config.models import (
    BuildSpec,
    CommandStep,
    ComponentIdentity,
    Configuration,
    PatchSpec,
    SourceSpec,
    TargetKind,
    TestSpec,
    TestTarget,
    derive_family,
)
from hvtest.config.selection import SELECT_ALL, Selection, matches, select

__all__ = [
    "SELECT_ALL",
    "BuildSpec",
    "CommandStep",
    "ComponentIdentity",
    "Configuration",
    "PatchSpec",
    "Selection",
    "SourceSpec",
    "TargetKind",
    "TestSpec",
    "TestTarget",
    "build_configuration",
    "derive_family",
    "load_default_targets",
    "matches",
    "resolve_config",
    "select",
]
