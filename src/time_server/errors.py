"""
Fatal error types for time-server.

Expected absences (no receiver, no pulse signal, nothing managed by gpsd)
are plain None values and never appear here. Everything in this module
aborts the run with exit status 1.
"""


class ProvisioningError(Exception):
    """Base class for failures that abort the whole run."""


class MissingCommandError(ProvisioningError):
    """A required external command (apt-get, systemctl, certbot) is absent."""


class ServiceInactiveError(ProvisioningError):
    """A companion service that must already be running is not active."""


class CommandFailedError(ProvisioningError):
    """An external command returned a non-zero status."""


class ConfigurationError(ProvisioningError):
    """Parameters required for an explicitly requested feature are missing."""


__all__ = [
    "ProvisioningError",
    "MissingCommandError",
    "ServiceInactiveError",
    "CommandFailedError",
    "ConfigurationError",
]
