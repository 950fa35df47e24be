"""Error kinds raised by the dockcheck components.

Only ``RuntimeUnavailable`` aborts a check cycle.  Every other kind is
caught by the run controller or the orchestrator, logged, counted, and the
cycle moves on to the next container.
"""


class DockcheckError(Exception):
    """Base class for dockcheck errors."""


class ConfigError(DockcheckError):
    """Settings file missing, unreadable or failing schema validation."""


class RuntimeUnavailable(DockcheckError):
    """The container runtime could not be reached.  Fatal for the cycle."""


class DigestUnresolvable(DockcheckError):
    """Neither regctl nor manifest inspection produced a registry digest."""


class FilterError(DockcheckError):
    """A configured filter could not be parsed or evaluated."""


class BackupFailed(DockcheckError):
    """Tagging the pre-update image as a backup failed."""


class UpdateFailed(DockcheckError):
    """Pulling or recreating a container's service failed."""


class StandaloneUpdateUnsupported(UpdateFailed):
    """Container is not compose-managed and cannot be recreated safely."""
