"""Input checks that run before anything touches the directory."""
from __future__ import annotations

from typing import AbstractSet, List

from .errors import ConfigurationError, InvalidServiceNameError
from .models import SERVICE_WHITELIST, ProvisioningRequest


def validate_request(request: ProvisioningRequest) -> ProvisioningRequest:
    """Enforce required and mutually-exclusive parameters.

    Pure precondition check: no directory access, no logging side effects.
    Returns the request unchanged so callers can chain it.
    """

    if not request.service_account_name:
        raise ConfigurationError("A service account name is required.")
    if not request.domain_name:
        raise ConfigurationError("A domain name is required.")
    if not request.service_names or not request.service_names.strip():
        raise ConfigurationError("At least one service name is required.")

    if request.use_domain_computers_group and request.authorized_principal:
        raise ConfigurationError(
            "Specify either an authorized principal or the Domain Computers group, not both."
        )
    if not request.use_domain_computers_group and not request.authorized_principal:
        raise ConfigurationError(
            "Specify an authorized principal or use the Domain Computers group."
        )
    if not request.use_domain_computers_group and not request.server_name:
        raise ConfigurationError(
            "A server name is required unless the Domain Computers group is used."
        )
    return request


def parse_service_names(
    raw: str, whitelist: AbstractSet[str] = SERVICE_WHITELIST
) -> List[str]:
    """Split a comma-separated service list and check every entry against ``whitelist``.

    Order and duplicates are preserved. The first entry that is not allowed
    aborts the whole list.
    """

    services = [token.strip() for token in (raw or "").split(",")]
    for service in services:
        if service not in whitelist:
            allowed = ", ".join(sorted(whitelist))
            raise InvalidServiceNameError(
                service,
                f"Invalid service name '{service}'. Allowed values: {allowed}.",
            )
    return services


__all__ = ["parse_service_names", "validate_request"]
