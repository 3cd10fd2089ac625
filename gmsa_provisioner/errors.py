"""Error taxonomy for the gMSA provisioning workflow."""
from __future__ import annotations

from typing import Optional


class ProvisioningError(RuntimeError):
    """Base class for every failure that aborts a provisioning run."""


class ConfigurationError(ProvisioningError):
    """Raised when operator input or the settings file is invalid or contradictory."""


class DependencyError(ProvisioningError):
    """Raised when the directory-management capability cannot be made available."""


class PrincipalNotFoundError(ProvisioningError):
    """Raised when the password-retrieval principal cannot be located."""


class InvalidServiceNameError(ProvisioningError):
    """Raised when a requested service is not in the SPN service whitelist."""

    def __init__(self, service_name: str, message: Optional[str] = None):
        self.service_name = service_name
        super().__init__(message or f"Invalid service name '{service_name}'.")


class DirectoryWriteError(ProvisioningError):
    """Raised when the directory rejects account creation or server binding."""


class SpnRegistrationError(ProvisioningError):
    """Raised when the directory rejects a service principal name."""

    def __init__(self, spn: str, message: str):
        self.spn = spn
        super().__init__(message)


__all__ = [
    "ConfigurationError",
    "DependencyError",
    "DirectoryWriteError",
    "InvalidServiceNameError",
    "PrincipalNotFoundError",
    "ProvisioningError",
    "SpnRegistrationError",
]
