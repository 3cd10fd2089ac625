from typing import Dict, List, Optional, Set, Tuple

import pytest

from gmsa_provisioner.capabilities import StaticCapabilityProvider
from gmsa_provisioner.errors import DirectoryWriteError, SpnRegistrationError
from gmsa_provisioner.models import ProvisioningRequest

DOMAIN_COMPUTERS_DN = "CN=Domain Computers,CN=Users,DC=corp,DC=local"
SERVER_DN = "CN=SERVER1,OU=Servers,DC=corp,DC=local"


class FakeDirectory:
    """Records every directory call so tests can assert on order and count."""

    def __init__(self, group: Optional[Dict[str, str]] = None):
        self.group = group
        self.calls: List[Tuple] = []
        self.fail_create: Optional[str] = None
        self.fail_bind: Optional[str] = None
        self.reject_spns: Set[str] = set()

    @property
    def mutations(self) -> List[Tuple]:
        return [call for call in self.calls if call[0] in {"create_gmsa", "bind_computer", "add_spn"}]

    @property
    def spns(self) -> List[str]:
        return [call[2] for call in self.calls if call[0] == "add_spn"]

    def find_group_by_rid(self, rid: int):
        self.calls.append(("find_group_by_rid", rid))
        return self.group

    def create_gmsa(self, name: str, dns_host_name: str, principal: str) -> str:
        self.calls.append(("create_gmsa", name, dns_host_name, principal))
        if self.fail_create:
            raise DirectoryWriteError(self.fail_create)
        return f"CN={name},CN=Managed Service Accounts,DC=corp,DC=local"

    def bind_computer(self, computer: str, gmsa_dn: str) -> None:
        self.calls.append(("bind_computer", computer, gmsa_dn))
        if self.fail_bind:
            raise DirectoryWriteError(self.fail_bind)

    def add_spn(self, gmsa_dn: str, spn: str) -> None:
        self.calls.append(("add_spn", gmsa_dn, spn))
        if spn in self.reject_spns:
            raise SpnRegistrationError(spn, f"constraintViolation for {spn}")


@pytest.fixture
def directory():
    return FakeDirectory(group={"distinguishedName": DOMAIN_COMPUTERS_DN, "name": "Domain Computers"})


@pytest.fixture
def capabilities():
    return StaticCapabilityProvider({"ActiveDirectory": {"installed": True, "active": True}})


@pytest.fixture
def server_request():
    return ProvisioningRequest(
        service_account_name="gmsaWeb",
        domain_name="corp.local",
        service_names="HTTP,HOST",
        authorized_principal=SERVER_DN,
        server_name="Server1",
    )


@pytest.fixture
def domain_request():
    return ProvisioningRequest(
        service_account_name="gmsaFarm",
        domain_name="corp.local",
        service_names="HTTP",
        use_domain_computers_group=True,
        server_name="Server1",
    )
