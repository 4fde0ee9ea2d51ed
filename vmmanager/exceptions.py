"""Custom exceptions for vm-manager."""

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(ManagerError):
    """Malformed user input: field format, port range, duplicate name."""


class NotFoundError(ManagerError):
    """A record, image or artifact does not exist."""


class ToolingError(ManagerError):
    """A required host tool is missing."""


class ProvisioningError(ManagerError):
    """Download, extraction or resize of a disk image failed."""


class RemoteExecutionError(ManagerError):
    """A remote bootstrap attempt failed."""

    def __init__(self, message: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ProcessError(ManagerError):
    """The hypervisor process failed or could not be stopped."""
