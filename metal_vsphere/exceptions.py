"""Error hierarchy for the vSphere driver.

Every error raised by the driver derives from DriverError so callers can
catch the whole family at once. Messages carry the machine name, server id
and driver URL whenever they are known.
"""
from __future__ import annotations

from typing import Optional


class DriverError(RuntimeError):
    pass


class ConfigurationError(DriverError):
    """Driver URL or options are missing or malformed."""


class PreconditionError(DriverError):
    """A required bootstrap field is missing. Never retried."""


class UnsupportedTransportError(PreconditionError):
    """The guest needs a remote transport this driver does not provide."""


class TemplateNotFoundError(DriverError):
    pass


class MachineNotFoundError(DriverError):
    pass


class NameConflictError(DriverError):
    """A VM with the target name exists but is not linked to the record."""


class ReadinessTimeout(DriverError, TimeoutError):
    """Machine did not become ready, even after the recovery reboot."""


class PlatformError(DriverError):
    """A call against the virtualization platform failed."""

    def __init__(self, message: str, operation: Optional[str] = None, server_id: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.server_id = server_id


class PlatformConnectionError(PlatformError, ConnectionError):
    pass


class TransportError(DriverError):
    pass


class ConvergenceError(DriverError):
    pass


class InvalidServerURLError(ConvergenceError, ValueError):
    """The configuration server URL cannot be parsed."""


class WaitCancelled(DriverError):
    """A polling wait was cancelled before its condition held."""
