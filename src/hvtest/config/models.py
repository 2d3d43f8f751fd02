"""
Type-safe test target configuration models.

Target descriptors from the JSON configuration (or the built-in defaults) are
parsed into frozen dataclasses once at load time. Kind, family and build
arguments are explicit fields, so downstream code dispatches on fields rather
than on target name prefixes.
"""

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from hvtest.errors import ConfigInvalid

DEFAULT_BUILD_TIMEOUT_MINUTES = 15.0
DEFAULT_TEST_TIMEOUT_MINUTES = 30.0
DEFAULT_POST_COMMAND_TIMEOUT_MINUTES = 1.0
DEFAULT_PATCH_SECTION = "crates-io"
DEFAULT_PATH_TEMPLATE = "../component"
DEFAULT_BRANCH = "main"
DEFAULT_BIN_DIR = "/tmp/tftp"
DEFAULT_TEST_ENV = (("RUST_LOG", "debug"),)

_CRATE_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class TargetKind(Enum):
    """Kind of test target; decides resource contention and test strategy."""

    EMULATOR = "emulator"
    BOARD = "board"

    @classmethod
    def parse(cls, value: str) -> "TargetKind":
        """Parse a kind from configuration ("qemu" is accepted for emulator)."""
        normalized = (value or "qemu").strip().lower()
        if normalized in ("qemu", "emulator"):
            return cls.EMULATOR
        if normalized == "board":
            return cls.BOARD
        raise ConfigInvalid(f"Unknown target type: {value!r} (expected 'qemu' or 'board')")


# Second name component that marks a kind-qualified family ("axvisor-qemu-...").
_KIND_TOKENS = ("qemu", "board")


def derive_family(name: str) -> str:
    """Derive the family token of a target name.

    "axvisor-qemu-aarch64-linux" -> "axvisor-qemu", "starry-riscv64" -> "starry".
    """
    parts = name.split("-")
    if len(parts) >= 3 and parts[1] in _KIND_TOKENS:
        return f"{parts[0]}-{parts[1]}"
    return parts[0]


def _timeout_seconds(data: Dict[str, Any], default_minutes: float, where: str) -> float:
    """Read timeout_seconds or timeout_minutes from a section, in seconds."""
    raw = data.get("timeout_seconds")
    scale = 1
    if raw is None:
        raw = data.get("timeout_minutes")
        scale = 60
        if raw is None:
            raw = default_minutes
    if isinstance(raw, bool):
        raise ConfigInvalid(f"{where}: timeout must be a number")
    try:
        seconds = float(raw) * scale
    except (TypeError, ValueError):
        raise ConfigInvalid(f"{where}: timeout must be a number")
    if not seconds > 0 or math.isinf(seconds):
        raise ConfigInvalid(f"{where}: timeout must be positive and finite")
    return seconds


def _split_list(value: Any) -> Tuple[str, ...]:
    """Accept either a list or a comma separated string; strip whitespace."""
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, list):
        items = [str(item) for item in value]
    else:
        raise ConfigInvalid(f"Expected a list or comma separated string, got {type(value).__name__}")
    return tuple(item.strip() for item in items if item.strip())


@dataclass(frozen=True)
class ComponentIdentity:
    """The component under test.

    Attributes:
        name: Human-readable component name (defaults to the crate name)
        crate_name: Cargo package name bound in the downstream patch section
        directory: Absolute path to the component checkout
    """

    name: str
    crate_name: str
    directory: Path

    def __post_init__(self) -> None:
        if not _CRATE_NAME_RE.match(self.crate_name):
            raise ConfigInvalid(f"Invalid crate name for component: {self.crate_name!r}")


@dataclass(frozen=True)
class SourceSpec:
    """Where a target's repository lives."""

    url: str
    branch: str = DEFAULT_BRANCH


@dataclass(frozen=True)
class CommandStep:
    """A single extra command with its own deadline."""

    command: str
    timeout: float


@dataclass(frozen=True)
class BuildSpec:
    """Build phase configuration.

    Attributes:
        command: Build command; empty means the build phase is skipped
        timeout: Deadline in seconds
        post_commands: Steps run after a successful build (e.g. rootfs preparation)
    """

    command: str = ""
    timeout: float = DEFAULT_BUILD_TIMEOUT_MINUTES * 60
    post_commands: Tuple[CommandStep, ...] = ()


@dataclass(frozen=True)
class TestSpec:
    """Test phase configuration.

    Attributes:
        command: Test command
        timeout: Deadline in seconds
        build_config: Board build config passed to `cargo xtask` (--build-config)
        qemu_config: QEMU runtime config (emulator targets)
        uboot_config: U-Boot runtime config (board targets)
        vmconfigs: Guest VM configuration files, relative to the checkout
        vmimage_names: Guest image names, paired with vmconfigs by position
        bin_dir: TFTP directory for board firmware transfer
        success_markers: Extra success markers appended to the default table
        failure_markers: Output substrings that mark the run as failed
        env: Extra environment variables for the test command
    """

    __test__ = False  # keep pytest from collecting this class

    command: str
    timeout: float = DEFAULT_TEST_TIMEOUT_MINUTES * 60
    build_config: str = ""
    qemu_config: str = ""
    uboot_config: str = ""
    vmconfigs: Tuple[str, ...] = ()
    vmimage_names: Tuple[str, ...] = ()
    bin_dir: str = DEFAULT_BIN_DIR
    success_markers: Tuple[str, ...] = ()
    failure_markers: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = DEFAULT_TEST_ENV

    def image_pairs(self) -> List[Tuple[str, str]]:
        """Return (vmconfig, image name) pairs; configs without an image are dropped."""
        return list(zip(self.vmconfigs, self.vmimage_names))


@dataclass(frozen=True)
class PatchSpec:
    """Where and how to bind the component in the target manifest."""

    section: str = DEFAULT_PATCH_SECTION
    path_template: str = DEFAULT_PATH_TEMPLATE


@dataclass(frozen=True)
class TestTarget:
    """
    Immutable test target descriptor.

    Attributes:
        name: Unique target name (CLI selection, log and status file naming)
        kind: Emulator or board
        family: Family token used by group selectors (computed at load time)
        architecture: Target CPU architecture (e.g. "aarch64")
        source: Repository URL and branch
        build: Build phase configuration
        test: Test phase configuration; None means build-only success
        patch: Manifest patch parameters
        board: Board name for board targets (e.g. "phytiumpi")
        exclusive: Whether the target competes for the contended port/serial line
    """

    __test__ = False  # keep pytest from collecting this class

    name: str
    kind: TargetKind
    family: str
    architecture: str
    source: SourceSpec
    build: BuildSpec = field(default_factory=BuildSpec)
    test: Optional[TestSpec] = None
    patch: PatchSpec = field(default_factory=PatchSpec)
    board: str = ""
    exclusive: bool = False

    @property
    def is_board(self) -> bool:
        return self.kind is TargetKind.BOARD

    def in_family(self, token: str) -> bool:
        """True if the family tag is the token or nested below it ("axvisor" covers "axvisor-qemu")."""
        return self.family == token or self.family.startswith(f"{token}-")

    def expand(self, template: str) -> str:
        """Expand {arch}, {board} and {name} placeholders in a command template."""
        return template.replace("{arch}", self.architecture).replace("{board}", self.board).replace("{name}", self.name)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], patch_defaults: Optional[PatchSpec] = None) -> "TestTarget":
        """
        Parse a target descriptor from its JSON dictionary.

        Args:
            data: Raw target dictionary
            patch_defaults: Document-level patch defaults (target values win)

        Returns:
            Parsed TestTarget

        Raises:
            ConfigInvalid: If required fields are missing or invalid
        """
        if not isinstance(data, dict):
            raise ConfigInvalid(f"Test target must be an object, got {type(data).__name__}")

        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ConfigInvalid("Test target is missing a 'name'")
        name = name.strip()

        kind = TargetKind.parse(data.get("kind") or data.get("type") or "qemu")

        repo = data.get("repo") or {}
        if not isinstance(repo, dict) or not repo.get("url"):
            raise ConfigInvalid(f"{name}: 'repo.url' is required")
        source = SourceSpec(url=str(repo["url"]), branch=str(repo.get("branch") or DEFAULT_BRANCH))

        build_data = data.get("build") or {}
        if not isinstance(build_data, dict):
            raise ConfigInvalid(f"{name}: 'build' must be an object")
        post_commands = tuple(
            CommandStep(
                command=str(step.get("command", "")),
                timeout=_timeout_seconds(step, DEFAULT_POST_COMMAND_TIMEOUT_MINUTES, f"{name}.build.post_commands"),
            )
            for step in build_data.get("post_commands") or []
            if isinstance(step, dict) and step.get("command")
        )
        build = BuildSpec(
            command=str(build_data.get("command") or ""),
            timeout=_timeout_seconds(build_data, DEFAULT_BUILD_TIMEOUT_MINUTES, f"{name}.build"),
            post_commands=post_commands,
        )

        test = _parse_test(name, data.get("test"))

        patch_defaults = patch_defaults or PatchSpec()
        patch_data = data.get("patch") or {}
        if not isinstance(patch_data, dict):
            raise ConfigInvalid(f"{name}: 'patch' must be an object")
        patch = PatchSpec(
            section=str(patch_data.get("section") or patch_defaults.section),
            path_template=str(patch_data.get("path_template") or patch_defaults.path_template),
        )

        exclusive = data.get("exclusive")
        if exclusive is not None and not isinstance(exclusive, bool):
            raise ConfigInvalid(f"{name}: 'exclusive' must be true or false")
        return cls(
            name=name,
            kind=kind,
            family=str(data.get("family") or derive_family(name)),
            architecture=str(data.get("arch") or data.get("architecture") or ""),
            source=source,
            build=build,
            test=test,
            patch=patch,
            board=str(data.get("board") or ""),
            exclusive=exclusive if exclusive is not None else kind is TargetKind.BOARD,
        )


def _parse_test(name: str, test_data: Any) -> Optional[TestSpec]:
    """Parse the optional test section; an absent or command-less section means build-only."""
    if test_data is None:
        return None
    if not isinstance(test_data, dict):
        raise ConfigInvalid(f"{name}: 'test' must be an object")
    command = str(test_data.get("command") or "")
    if not command:
        return None

    env_data = test_data.get("env")
    if env_data is None:
        env = DEFAULT_TEST_ENV
    elif isinstance(env_data, dict):
        env = tuple((str(k), str(v)) for k, v in env_data.items())
    else:
        raise ConfigInvalid(f"{name}: 'test.env' must be an object")

    return TestSpec(
        command=command,
        timeout=_timeout_seconds(test_data, DEFAULT_TEST_TIMEOUT_MINUTES, f"{name}.test"),
        build_config=str(test_data.get("build_config") or ""),
        qemu_config=str(test_data.get("qemu_config") or ""),
        uboot_config=str(test_data.get("uboot_config") or ""),
        vmconfigs=_split_list(test_data.get("vmconfigs")),
        vmimage_names=_split_list(test_data.get("vmimage_name", test_data.get("vmimage_names"))),
        bin_dir=str(test_data.get("bin_dir") or DEFAULT_BIN_DIR),
        success_markers=_split_list(test_data.get("success_markers")),
        failure_markers=_split_list(test_data.get("failure_markers")),
        env=env,
    )


@dataclass(frozen=True)
class Configuration:
    """
    Resolved configuration: the component plus its ordered target list.

    Attributes:
        component: Component identity
        targets: Ordered target descriptors (names are unique)
        source: Path of the configuration file, or None for built-in defaults
        uses_defaults: True when the built-in target list is in use
    """

    component: ComponentIdentity
    targets: Tuple[TestTarget, ...]
    source: Optional[Path] = None
    uses_defaults: bool = False

    def __post_init__(self) -> None:
        seen = set()
        for target in self.targets:
            if target.name in seen:
                raise ConfigInvalid(f"Duplicate test target name: {target.name}")
            seen.add(target.name)

    def get(self, name: str) -> Optional[TestTarget]:
        """Return the target with the given name, or None."""
        for target in self.targets:
            if target.name == name:
                return target
        return None

    @property
    def names(self) -> List[str]:
        return [target.name for target in self.targets]

    @property
    def families(self) -> List[str]:
        """Distinct family tokens in target order."""
        families: List[str] = []
        for target in self.targets:
            if target.family not in families:
                families.append(target.family)
        return families
