"""Custom exceptions for Lab Hardener."""


class HardenerError(Exception):
    """Base exception for all hardener errors."""

    pass


class ConfigurationError(HardenerError):
    """Raised when configuration is invalid."""

    pass


class SystemRequirementError(HardenerError):
    """Raised when system requirements are not met."""

    pass


class ValidationError(HardenerError):
    """Raised when validation fails."""

    pass


class CommandExecutionError(HardenerError):
    """Raised when command execution fails."""

    pass


class RollbackError(HardenerError):
    """Raised when rollback operation fails."""

    pass


class ServiceControlError(HardenerError):
    """Raised when service control operation fails."""

    pass


class ProxmoxError(HardenerError):
    """Raised when a Proxmox node command fails or returns unusable output."""

    pass


class OperationSkipped(HardenerError):
    """Raised by an operation whose effect is already in place."""

    pass


class PermanentOperationError(HardenerError):
    """Raised by an operation that must not be retried."""

    def __init__(self, message: str, output: object = None) -> None:
        super().__init__(message)
        self.output = output


class RemoteConnectionError(PermanentOperationError):
    """Raised when an SSH session cannot be established.

    Transient failures have already been retried by the transport, so
    operation runners do not retry it again.
    """

    pass


class RemoteAuthenticationError(RemoteConnectionError):
    """Raised when the remote host rejects the SSH credentials."""

    pass
