"""Data models for gMSA provisioning requests and results."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


SERVICE_WHITELIST: FrozenSet[str] = frozenset(
    {"HTTP", "HOST", "LDAP", "MSSQLSvc", "GC", "RPC", "WSMAN"}
)

# Well-known relative identifier of the built-in "Domain Computers" group.
DOMAIN_COMPUTERS_RID = 515
DOMAIN_COMPUTERS_DISPLAY_NAME = "Domain Computers"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


@dataclass(frozen=True)
class ProvisioningRequest:
    """Operator input for a single gMSA provisioning run."""

    service_account_name: str
    domain_name: str
    service_names: str
    authorized_principal: Optional[str] = None
    use_domain_computers_group: bool = False
    server_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvisioningRequest":
        services = data.get("service_names") or ""
        if isinstance(services, (list, tuple)):
            services = ",".join(str(item) for item in services)
        return cls(
            service_account_name=str(data.get("service_account_name") or "").strip(),
            domain_name=str(data.get("domain_name") or "").strip(),
            service_names=str(services),
            authorized_principal=_clean(data.get("authorized_principal")),
            use_domain_computers_group=bool(data.get("use_domain_computers_group", False)),
            server_name=_clean(data.get("server_name")),
        )

    @property
    def dns_host_name(self) -> str:
        return f"{self.service_account_name}.{self.domain_name}"


@dataclass(frozen=True)
class ResolvedPrincipal:
    """Principal granted the right to retrieve the managed password."""

    distinguished_name: str
    display_name: Optional[str] = None

    def __str__(self) -> str:
        return self.display_name or self.distinguished_name


def spn_pair(service: str, server_name: str, domain_name: str) -> Tuple[str, str]:
    """Return the fully-qualified and short SPN forms for ``service`` on ``server_name``."""

    return (f"{service}/{server_name}.{domain_name}", f"{service}/{server_name}")


@dataclass
class ProvisioningResult:
    """Durable effects of a completed provisioning run."""

    account_dn: str
    principal: ResolvedPrincipal
    server_bound: bool = False
    spns: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distinguished_name": self.account_dn,
            "authorized_principal": self.principal.distinguished_name,
            "server_bound": self.server_bound,
            "service_principal_names": list(self.spns),
        }


__all__ = [
    "DOMAIN_COMPUTERS_DISPLAY_NAME",
    "DOMAIN_COMPUTERS_RID",
    "ProvisioningRequest",
    "ProvisioningResult",
    "ResolvedPrincipal",
    "SERVICE_WHITELIST",
    "spn_pair",
]
