"""gMSA provisioning workflow.

Stages run strictly in order and any failure aborts the rest of the run:

    INIT -> VALIDATED -> MODULE_READY -> PRINCIPAL_RESOLVED -> SERVICES_VALIDATED
         -> ACCOUNT_CREATED -> [SERVER_BOUND -> SPNS_REGISTERED] -> COMPLETED

Server binding and SPN registration are skipped together when the Domain
Computers group is authorized. Effects already committed to the directory are
never rolled back: a failed run reports what was left behind in its error
message and exits non-zero.
"""
from __future__ import annotations

import enum
import logging
from pathlib import Path
from typing import Any, Callable, List, Optional

from .capabilities import CapabilityProvider, ensure_capability
from .errors import DirectoryWriteError, PrincipalNotFoundError, ProvisioningError, SpnRegistrationError
from .models import (
    DOMAIN_COMPUTERS_DISPLAY_NAME,
    DOMAIN_COMPUTERS_RID,
    ProvisioningRequest,
    ProvisioningResult,
    ResolvedPrincipal,
    spn_pair,
)
from .transcript import session_transcript
from .validation import parse_service_names, validate_request

logger = logging.getLogger(__name__)

DEFAULT_CAPABILITY = "ActiveDirectory"


class WorkflowState(enum.Enum):
    INIT = "Init"
    VALIDATED = "Validated"
    MODULE_READY = "ModuleReady"
    PRINCIPAL_RESOLVED = "PrincipalResolved"
    SERVICES_VALIDATED = "ServicesValidated"
    ACCOUNT_CREATED = "AccountCreated"
    SERVER_BOUND = "ServerBound"
    SPNS_REGISTERED = "SpnsRegistered"
    COMPLETED = "Completed"
    FAILED = "Failed"


StateCallback = Callable[[WorkflowState], None]


def resolve_principal(request: ProvisioningRequest, directory: Any) -> ResolvedPrincipal:
    """Determine who may retrieve the managed password."""

    if not request.use_domain_computers_group:
        logger.info("Using authorized principal '%s'.", request.authorized_principal)
        return ResolvedPrincipal(distinguished_name=str(request.authorized_principal))

    logger.info("Looking up the %s group (RID %s)...", DOMAIN_COMPUTERS_DISPLAY_NAME, DOMAIN_COMPUTERS_RID)
    group = directory.find_group_by_rid(DOMAIN_COMPUTERS_RID)
    if not group:
        raise PrincipalNotFoundError(
            f"The {DOMAIN_COMPUTERS_DISPLAY_NAME} group (RID {DOMAIN_COMPUTERS_RID}) "
            f"was not found in domain '{request.domain_name}'."
        )
    principal = ResolvedPrincipal(
        distinguished_name=group["distinguishedName"],
        display_name=group.get("name") or DOMAIN_COMPUTERS_DISPLAY_NAME,
    )
    logger.info("Found group '%s' (%s).", principal.display_name, principal.distinguished_name)
    return principal


def create_account(
    request: ProvisioningRequest, principal: ResolvedPrincipal, directory: Any
) -> str:
    """Create the gMSA object; returns its distinguished name."""

    logger.info(
        "Creating gMSA %s with DNS host name %s...",
        request.service_account_name,
        request.dns_host_name,
    )
    try:
        account_dn = directory.create_gmsa(
            request.service_account_name,
            request.dns_host_name,
            principal.distinguished_name,
        )
    except ProvisioningError:
        raise
    except RuntimeError as exc:
        raise DirectoryWriteError(
            f"Unable to create gMSA '{request.service_account_name}': {exc}"
        ) from exc
    logger.info("gMSA %s created (%s).", request.service_account_name, account_dn)
    return account_dn


def bind_server(request: ProvisioningRequest, account_dn: str, directory: Any) -> None:
    """Grant the authorized computer the use of the new account."""

    computer = str(request.authorized_principal)
    logger.info("Associating %s with gMSA %s...", computer, request.service_account_name)
    try:
        directory.bind_computer(computer, account_dn)
    except DirectoryWriteError as exc:
        raise DirectoryWriteError(
            f"{exc} The gMSA {account_dn} was created and has not been removed."
        ) from exc
    except RuntimeError as exc:
        raise DirectoryWriteError(
            f"Unable to associate {computer} with {account_dn}: {exc} "
            f"The gMSA was created and has not been removed."
        ) from exc


def register_spns(
    request: ProvisioningRequest,
    services: List[str],
    account_dn: str,
    directory: Any,
) -> List[str]:
    """Register both SPN forms for each service, in input order."""

    registered: List[str] = []
    for service in services:
        for spn in spn_pair(service, str(request.server_name), request.domain_name):
            logger.info("Registering SPN %s...", spn)
            try:
                directory.add_spn(account_dn, spn)
            except RuntimeError as exc:
                committed = ", ".join(registered) if registered else "none"
                reason = str(exc)
                raise SpnRegistrationError(
                    spn,
                    f"Failed to register SPN '{spn}': {reason} "
                    f"The gMSA {account_dn} was left in place; SPNs already registered: {committed}.",
                ) from exc
            registered.append(spn)
    return registered


def provision_gmsa(
    request: ProvisioningRequest,
    directory: Any,
    capabilities: CapabilityProvider,
    capability_name: str = DEFAULT_CAPABILITY,
    transcript_path: Optional[Path] = None,
    on_state: Optional[StateCallback] = None,
) -> ProvisioningResult:
    """Run the full provisioning workflow for ``request``.

    ``directory`` must provide ``find_group_by_rid``, ``create_gmsa``,
    ``bind_computer`` and ``add_spn`` (see :class:`~gmsa_provisioner.ad_client.ADClient`).
    Raises a :class:`~gmsa_provisioner.errors.ProvisioningError` subclass on
    the first failing stage.
    """

    def enter(state: WorkflowState) -> None:
        logger.debug("Workflow state: %s", state.value)
        if on_state:
            on_state(state)

    enter(WorkflowState.INIT)
    try:
        validate_request(request)
    except ProvisioningError:
        enter(WorkflowState.FAILED)
        raise
    enter(WorkflowState.VALIDATED)

    with session_transcript(transcript_path):
        try:
            ensure_capability(capabilities, capability_name)
            enter(WorkflowState.MODULE_READY)

            principal = resolve_principal(request, directory)
            enter(WorkflowState.PRINCIPAL_RESOLVED)

            services = parse_service_names(request.service_names)
            enter(WorkflowState.SERVICES_VALIDATED)

            account_dn = create_account(request, principal, directory)
            enter(WorkflowState.ACCOUNT_CREATED)

            result = ProvisioningResult(account_dn=account_dn, principal=principal)
            if request.use_domain_computers_group:
                logger.info(
                    "Domain Computers group authorized; skipping server binding and SPN registration."
                )
            else:
                bind_server(request, account_dn, directory)
                result.server_bound = True
                enter(WorkflowState.SERVER_BOUND)

                result.spns = register_spns(request, services, account_dn, directory)
                enter(WorkflowState.SPNS_REGISTERED)
        except ProvisioningError as exc:
            logger.error("Provisioning failed: %s", exc)
            enter(WorkflowState.FAILED)
            raise

        logger.info("gMSA %s provisioned successfully.", request.service_account_name)
        enter(WorkflowState.COMPLETED)
        return result


__all__ = [
    "WorkflowState",
    "bind_server",
    "create_account",
    "provision_gmsa",
    "register_spns",
    "resolve_principal",
]
