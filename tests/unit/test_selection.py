"""Unit tests for target selection."""

import pytest

from hvtest.config.loader import build_configuration
from hvtest.config.models import TestTarget
from hvtest.config.selection import matches, select


@pytest.fixture
def config(component_dir):
    return build_configuration({}, component_dir)


@pytest.fixture
def mixed_config(component_dir):
    """Two parallel-safe emulators plus a target whose name equals a family token."""
    targets = [
        {"name": "demo-qemu-a", "repo": {"url": "u"}},
        {"name": "demo-qemu-b", "repo": {"url": "u"}},
        {"name": "demo", "repo": {"url": "u"}},
        {"name": "demo-extra", "repo": {"url": "u"}},
    ]
    return build_configuration({"test_targets": targets}, component_dir)


class TestSelect:
    """Selector grammar."""

    def test_select_all(self, config):
        """'all' returns every target in order and forces sequential execution."""
        selection = select(config, "all")
        assert selection.names == config.names
        assert len(selection.names) == 11
        assert selection.force_sequential

    def test_select_family(self, config):
        """A family token selects its members in order."""
        selection = select(config, "axvisor-qemu")
        assert selection.names == [
            "axvisor-qemu-aarch64-arceos",
            "axvisor-qemu-aarch64-linux",
            "axvisor-qemu-x86_64-nimbos",
        ]
        assert not selection.force_sequential

    @pytest.mark.parametrize("family", ["starry", "axvisor-board"])
    def test_exclusive_families_are_sequential(self, config, family):
        """Families with exclusive members must run sequentially."""
        selection = select(config, family)
        assert len(selection.names) == 4
        assert selection.force_sequential

    def test_single_target(self, config):
        """A literal name selects exactly that target."""
        selection = select(config, "starry-aarch64")
        assert selection.names == ["starry-aarch64"]
        assert [t.name for t in selection.targets] == ["starry-aarch64"]

    def test_exact_name_beats_family(self, mixed_config):
        """A target named like a family token is selected alone."""
        selection = select(mixed_config, "demo")
        assert selection.names == ["demo"]

    def test_unknown_name_is_kept(self, config):
        """Unknown names are kept so the runner can report TargetNotFound."""
        selection = select(config, "no-such-target")
        assert selection.names == ["no-such-target"]
        assert selection.targets == []

    def test_whitespace_is_stripped(self, config):
        """Selectors are trimmed."""
        assert select(config, " starry-aarch64 ").names == ["starry-aarch64"]

    def test_select_parent_family(self, config):
        """A token covers the families nested below it."""
        selection = select(config, "axvisor")
        assert len(selection.names) == 7
        assert selection.force_sequential

    def test_explicit_family_is_selectable(self, component_dir):
        """Family selection follows the family tag, not the name prefix."""
        targets = [
            {"name": "starry-aarch64", "family": "smoke", "repo": {"url": "u"}},
            {"name": "starry-riscv64", "repo": {"url": "u"}},
            {"name": "arceos-hello", "family": "smoke", "repo": {"url": "u"}},
        ]
        config = build_configuration({"test_targets": targets}, component_dir)

        assert select(config, "smoke").names == ["starry-aarch64", "arceos-hello"]
        assert select(config, "starry").names == ["starry-riscv64"]


def _target(name, **extra):
    return TestTarget.from_dict({"name": name, "repo": {"url": "u"}, **extra})


class TestMatches:
    """Exclusion pattern matching."""

    def test_exact_and_family(self):
        """Patterns match exact names and family tags."""
        assert matches(_target("axvisor-board-phytiumpi-arceos", type="board"), ["axvisor-board"])
        assert matches(_target("axvisor-board-phytiumpi-arceos", type="board"), ["axvisor"])
        assert matches(_target("starry-aarch64"), ["starry-aarch64"])
        assert not matches(_target("starry-aarch64"), ["starry-aarch"])
        assert not matches(_target("starry-aarch64"), [])

    def test_explicit_family(self):
        """An explicit family tag is what exclusion patterns see."""
        target = _target("starry-aarch64", family="smoke")
        assert matches(target, ["smoke"])
        assert not matches(target, ["starry"])
