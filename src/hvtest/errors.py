"""Error taxonomy for hvtest.

Configuration-level errors (ConfigInvalid, MissingDependency) abort the whole
invocation. Every other error is scoped to a single target and is converted to
a verdict at the TargetRunner boundary.
"""


class HvtestError(Exception):
    """Base class for all hvtest errors."""

    pass


class ConfigInvalid(HvtestError):
    """Raised when a configuration document is malformed or unreadable."""

    pass


class MissingDependency(HvtestError):
    """Raised when a required host tool (git, cargo) is not installed."""

    pass


class TargetError(HvtestError):
    """Base class for errors scoped to one test target."""

    pass


class TargetNotFound(TargetError):
    """Raised when a selected target name has no registry entry."""

    pass


class CloneFailed(TargetError):
    """Raised when the target repository cannot be cloned."""

    pass


class PatchFailed(TargetError):
    """Raised when the component override cannot be written to the manifest."""

    pass


class ManifestMissing(PatchFailed):
    """Raised when the target manifest does not exist or cannot be read."""

    pass


class PhaseFailed(TargetError):
    """A build or test phase did not succeed.

    Attributes:
        timed_out: True when the phase hit its deadline instead of failing outright
        exit_code: Process exit code when one was observed
    """

    def __init__(self, message: str, timed_out: bool = False, exit_code: int | None = None):
        super().__init__(message)
        self.timed_out = timed_out
        self.exit_code = exit_code


class BuildFailed(PhaseFailed):
    """Raised when the build phase fails or times out."""

    pass


class TestFailed(PhaseFailed):
    """Raised when the test phase fails or times out."""

    __test__ = False  # keep pytest from collecting this class


class HardwareUnavailable(TargetError):
    """Raised when a board target cannot reach physical hardware.

    Maps to a skipped verdict, not a failure.
    """

    pass


class RewriteFailed(TargetError):
    """Raised when a target configuration file cannot be read, parsed or rewritten."""

    pass
