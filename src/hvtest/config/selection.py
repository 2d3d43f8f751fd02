"""Target selection.

Selector grammar:
    all           every target, in configuration order
    <family>      every target whose family tag is <family> or nested below it
    <name>        a single target; unknown names fail later with TargetNotFound

Family membership is read from TestTarget.family, which is fixed at load time
(explicit "family" field or derived from the name).
"""

from dataclasses import dataclass, field
from typing import List, Sequence

from hvtest.config.models import Configuration, TestTarget

SELECT_ALL = "all"


@dataclass(frozen=True)
class Selection:
    """Result of applying a selector to a configuration.

    Attributes:
        selector: The selector as given by the caller
        names: Ordered target names to run (may include unknown literal names)
        targets: Registry entries for the known names, in the same order
        force_sequential: True when the selection must not run in parallel
    """

    selector: str
    names: List[str] = field(default_factory=list)
    targets: List[TestTarget] = field(default_factory=list)
    force_sequential: bool = False


def select(config: Configuration, selector: str) -> Selection:
    """Apply a selector to a configuration.

    Args:
        config: Resolved configuration
        selector: "all", a family token, or a literal target name

    Returns:
        Selection with the ordered names and the sequential policy
    """
    selector = selector.strip()

    if selector == SELECT_ALL:
        targets = list(config.targets)
        return Selection(selector, [t.name for t in targets], targets, force_sequential=True)

    exact = config.get(selector)
    if exact is not None:
        return Selection(selector, [exact.name], [exact], force_sequential=False)

    members = [target for target in config.targets if target.in_family(selector)]
    if members:
        # Boards and exclusive emulators share one serial line / control port.
        force_sequential = any(t.exclusive for t in members)
        return Selection(selector, [t.name for t in members], members, force_sequential=force_sequential)

    return Selection(selector, [selector], [], force_sequential=False)


def matches(target: TestTarget, patterns: Sequence[str]) -> bool:
    """Return True if a target is named by a pattern or belongs to a pattern family."""
    return any(target.name == pattern or target.in_family(pattern) for pattern in patterns)
