"""Active Directory helper client based on ldap3."""
from __future__ import annotations

import contextlib
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Type

import yaml
from impacket.ldap.ldaptypes import (
    ACCESS_ALLOWED_ACE,
    ACCESS_MASK,
    ACE,
    ACL,
    LDAP_SID,
    SR_SECURITY_DESCRIPTOR,
)
from ldap3 import ALL, BASE, MODIFY_ADD, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException

from .config import LDAPConfig
from .errors import (
    ConfigurationError,
    DependencyError,
    DirectoryWriteError,
    ProvisioningError,
    SpnRegistrationError,
)

logger = logging.getLogger(__name__)

GMSA_OBJECT_CLASS = "msDS-GroupManagedServiceAccount"
WORKSTATION_TRUST_ACCOUNT = 4096
PASSWORD_NEVER_EXPIRES = 0x10000
ACCOUNT_DISABLED = 0x2
MANAGED_PASSWORD_INTERVAL_DAYS = 30
# RC4 | AES128 | AES256
SUPPORTED_ENCRYPTION_TYPES = 28
READ_MANAGED_PASSWORD_MASK = 983551
# LDAP_SERVER_PERMISSIVE_MODIFY_OID
PERMISSIVE_MODIFY_CONTROL = ("1.2.840.113556.1.4.1413", False, None)
ATTRIBUTE_OR_VALUE_EXISTS = 20

_UAC_AND = "1.2.840.113556.1.4.803"
FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)

REPORT_KINDS = ("expired", "locked", "never_expires")


def gmsa_membership_descriptor(principal_sid: str) -> bytes:
    """Build the ``msDS-GroupMSAMembership`` security descriptor for ``principal_sid``."""

    sd = SR_SECURITY_DESCRIPTOR()
    sd["Revision"] = b"\x01"
    sd["Sbz1"] = b"\x00"
    sd["Control"] = 32772
    sd["OwnerSid"] = LDAP_SID()
    # BUILTIN\Administrators
    sd["OwnerSid"].fromCanonical("S-1-5-32-544")
    sd["GroupSid"] = b""
    sd["Sacl"] = b""

    sid = LDAP_SID()
    sid.fromCanonical(principal_sid)
    ace = ACE()
    ace["AceType"] = ACCESS_ALLOWED_ACE.ACE_TYPE
    ace["AceFlags"] = 0x00
    ace_data = ACCESS_ALLOWED_ACE()
    ace_data["Mask"] = ACCESS_MASK()
    ace_data["Mask"]["Mask"] = READ_MANAGED_PASSWORD_MASK
    ace_data["Sid"] = sid.getData()
    ace["Ace"] = ace_data

    acl = ACL()
    acl["AclRevision"] = 4
    acl["Sbz1"] = 0
    acl["Sbz2"] = 0
    acl.aces = [ace]
    sd["Dacl"] = acl
    return sd.getData()


def _looks_like_dn(identity: str) -> bool:
    return "=" in identity


def _to_filetime(moment: datetime) -> int:
    return int((moment - FILETIME_EPOCH).total_seconds() * 10_000_000)


class MockDirectory:
    """Lightweight directory emulator used when ldap3 connectivity isn't available."""

    def __init__(self, data_file: Optional[Path], base_dn: str, gmsa_container: str):
        self.data_file = data_file
        self.base_dn = base_dn
        self.gmsa_container = gmsa_container
        self._data: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if self.data_file and self.data_file.exists():
            try:
                with self.data_file.open("r", encoding="utf-8") as handle:
                    self._data = yaml.safe_load(handle) or {}
            except (OSError, yaml.YAMLError) as exc:
                raise ConfigurationError(
                    f"Mock directory file '{self.data_file}' could not be read: {exc}"
                ) from exc
            if not isinstance(self._data, dict):
                raise ConfigurationError(f"Mock directory file '{self.data_file}' must contain a mapping.")
        self._data.setdefault("domain_sid", "S-1-5-21-1000-1000-1000")
        self._data.setdefault("groups", [])
        self._data.setdefault("computers", [])
        self._data.setdefault("service_accounts", [])
        self._data.setdefault("users", [])
        self._data.setdefault("capabilities", {})

    def save(self) -> None:
        if not self.data_file:
            return
        try:
            self.data_file.parent.mkdir(parents=True, exist_ok=True)
            with self.data_file.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(self._data, handle, sort_keys=False, indent=2)
        except OSError as exc:
            raise DirectoryWriteError(f"Unable to persist mock directory '{self.data_file}': {exc}") from exc

    @property
    def domain_sid(self) -> str:
        return str(self._data["domain_sid"])

    @property
    def capabilities(self) -> Dict[str, Dict[str, Any]]:
        return self._data["capabilities"]

    def _find_principal(self, identity: str) -> Optional[Dict[str, Any]]:
        lowered = identity.lower()
        for record in [*self._data["groups"], *self._data["computers"]]:
            names = {
                str(record.get("distinguished_name") or "").lower(),
                str(record.get("sam_account_name") or "").lower(),
                str(record.get("name") or "").lower(),
            }
            if lowered in names or f"{lowered}$" in names:
                return record
        return None

    def find_group_by_sid(self, sid: str) -> Optional[Dict[str, str]]:
        for group in self._data["groups"]:
            if str(group.get("sid")) == sid:
                return {
                    "distinguishedName": str(group.get("distinguished_name")),
                    "name": str(group.get("name") or ""),
                }
        return None

    def create_gmsa(self, name: str, dns_host_name: str, principal: str) -> str:
        accounts = self._data["service_accounts"]
        if any(str(account.get("name")).lower() == name.lower() for account in accounts):
            raise DirectoryWriteError(
                f"Active Directory rejected the gMSA creation request (entryAlreadyExists). "
                f"An account named '{name}' already exists."
            )
        if not self._find_principal(principal):
            raise DirectoryWriteError(
                f"Active Directory rejected the gMSA creation request (noSuchObject). "
                f"Principal '{principal}' could not be resolved to a security identifier."
            )
        distinguished_name = f"CN={name},{self.gmsa_container}"
        accounts.append(
            {
                "distinguished_name": distinguished_name,
                "name": name,
                "sam_account_name": f"{name}$",
                "dns_host_name": dns_host_name,
                "principals_allowed_to_retrieve_password": [principal],
                "spns": [],
            }
        )
        self.save()
        return distinguished_name

    def bind_computer(self, computer: str, gmsa_dn: str) -> None:
        record = self._find_principal(computer)
        if not record or record not in self._data["computers"]:
            raise DirectoryWriteError(
                f"Unable to bind computer '{computer}' to {gmsa_dn} (noSuchObject)."
            )
        bound = record.setdefault("host_service_accounts", [])
        if gmsa_dn not in bound:
            bound.append(gmsa_dn)
        self.save()

    def add_spn(self, gmsa_dn: str, spn: str) -> None:
        target = None
        for account in self._data["service_accounts"]:
            spns = account.setdefault("spns", [])
            if account.get("distinguished_name") == gmsa_dn:
                target = account
            elif spn.lower() in (value.lower() for value in spns):
                raise SpnRegistrationError(
                    spn,
                    f"Unable to register SPN '{spn}' on {gmsa_dn} (constraintViolation). "
                    f"It is already registered on {account.get('distinguished_name')}.",
                )
        if target is None:
            raise SpnRegistrationError(spn, f"Unable to register SPN '{spn}': {gmsa_dn} does not exist.")
        if spn not in target["spns"]:
            target["spns"].append(spn)
        self.save()

    def search_accounts(self, kind: str, max_age_days: int) -> List[Dict[str, Any]]:
        threshold = datetime.now(timezone.utc) - timedelta(days=max_age_days)
        results: List[Dict[str, Any]] = []
        for user in self._data["users"]:
            never_expires = bool(user.get("password_never_expires"))
            if kind == "expired":
                pwd_last_set = _parse_timestamp(user.get("pwd_last_set"))
                matched = (
                    bool(user.get("enabled", True))
                    and not never_expires
                    and pwd_last_set is not None
                    and pwd_last_set <= threshold
                )
            elif kind == "locked":
                matched = bool(user.get("locked_out"))
            else:
                matched = never_expires
            if matched:
                results.append(
                    {
                        "sAMAccountName": str(user.get("sam_account_name") or ""),
                        "lastLogonTimestamp": _parse_timestamp(user.get("last_logon")),
                    }
                )
        return results


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        try:
            moment = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class ADClient:
    """Wrapper around ldap3 that exposes the directory operations used for gMSA provisioning.

    The LDAP bind is deferred until the first directory operation, so building
    a client never touches the network.
    """

    def __init__(self, config: LDAPConfig):
        self.config = config
        self._mock_directory: Optional[MockDirectory] = None
        self.server: Optional[Server] = None
        self.connection: Optional[Connection] = None
        self._domain_sid: Optional[str] = None

        if config.server_uri.startswith("mock://"):
            self._mock_directory = MockDirectory(
                config.mock_data_file, config.base_dn, config.managed_service_accounts_dn
            )

    @property
    def mock_directory(self) -> Optional[MockDirectory]:
        return self._mock_directory

    def _conn(self) -> Connection:
        if self.connection is not None:
            return self.connection
        logger.debug("Binding to %s", self.config.server_uri)
        self.server = Server(
            self.config.server_uri,
            use_ssl=self.config.use_ssl,
            get_info=ALL,
            connect_timeout=self.config.connect_timeout,
        )
        try:
            self.connection = Connection(
                self.server,
                user=self.config.user_dn,
                password=self.config.password,
                auto_bind=True,
                receive_timeout=self.config.receive_timeout,
            )
        except LDAPException as exc:
            raise DependencyError(
                f"Unable to bind to {self.config.server_uri}: {exc}"
            ) from exc
        return self.connection

    def close(self) -> None:
        if self.connection and self.connection.bound:
            self.connection.unbind()

    def __enter__(self) -> "ADClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    # Lookups -------------------------------------------------------------
    def domain_sid(self) -> str:
        if self._mock_directory:
            return self._mock_directory.domain_sid
        if self._domain_sid is None:
            entry = self._search_one(self.config.base_dn, "(objectClass=domain)", ["objectSid"], BASE)
            if entry is None or "objectSid" not in entry:
                raise DependencyError(f"Unable to read the domain SID from {self.config.base_dn}.")
            self._domain_sid = str(entry["objectSid"].value)
        return self._domain_sid

    def find_group_by_rid(self, rid: int) -> Optional[Dict[str, str]]:
        """Return the group whose SID is ``<domain SID>-<rid>``, if any."""

        sid = f"{self.domain_sid()}-{rid}"
        if self._mock_directory:
            return self._mock_directory.find_group_by_sid(sid)

        entry = self._search_one(
            self.config.base_dn,
            f"(&(objectClass=group)(objectSid={sid}))",
            ["cn", "distinguishedName"],
        )
        if entry is None:
            return None
        return {
            "distinguishedName": str(entry.entry_dn),
            "name": str(entry["cn"].value) if "cn" in entry else "",
        }

    def _search_one(
        self,
        search_base: str,
        search_filter: str,
        attributes: List[str],
        scope: Any = SUBTREE,
    ) -> Optional[Any]:
        connection = self._conn()
        try:
            connection.search(
                search_base=search_base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes,
                size_limit=1,
            )
        except LDAPException as exc:
            raise DependencyError(f"Directory search failed: {exc}") from exc
        if not connection.entries:
            return None
        return connection.entries[0]

    def _find_object(self, identity: str, object_class: str = "*") -> Optional[Any]:
        attributes = ["objectSid", "distinguishedName"]
        if _looks_like_dn(identity):
            return self._search_one(identity, f"(objectClass={object_class})", attributes, BASE)
        escaped = self._escape_filter_value(identity.rstrip("$"))
        return self._search_one(
            self.config.base_dn,
            f"(&(objectClass={object_class})(|(sAMAccountName={escaped})(sAMAccountName={escaped}$)))",
            attributes,
        )

    # Provisioning --------------------------------------------------------
    def create_gmsa(self, name: str, dns_host_name: str, principal: str) -> str:
        """Create the gMSA object and return its distinguished name."""

        if self._mock_directory:
            return self._mock_directory.create_gmsa(name, dns_host_name, principal)

        try:
            principal_entry = self._find_object(principal)
        except DependencyError as exc:
            raise DirectoryWriteError(f"Unable to look up principal '{principal}': {exc}") from exc
        if principal_entry is None or "objectSid" not in principal_entry:
            raise DirectoryWriteError(
                f"Principal '{principal}' could not be resolved to a security identifier."
            )
        principal_sid = str(principal_entry["objectSid"].value)
        logger.debug("Resolved principal %s to %s", principal, principal_sid)

        distinguished_name = f"CN={name},{self.config.managed_service_accounts_dn}"
        attributes = {
            "sAMAccountName": f"{name}$",
            "dNSHostName": dns_host_name,
            "userAccountControl": WORKSTATION_TRUST_ACCOUNT,
            "msDS-ManagedPasswordInterval": MANAGED_PASSWORD_INTERVAL_DAYS,
            "msDS-SupportedEncryptionTypes": SUPPORTED_ENCRYPTION_TYPES,
            "msDS-GroupMSAMembership": gmsa_membership_descriptor(principal_sid),
        }

        connection = self._conn()
        try:
            added = connection.add(
                dn=distinguished_name,
                object_class=[GMSA_OBJECT_CLASS],
                attributes=attributes,
            )
        except LDAPException as exc:
            raise DirectoryWriteError(f"Active Directory rejected the gMSA creation request: {exc}") from exc
        if not added:
            raise DirectoryWriteError(
                "Active Directory rejected the gMSA creation request"
                + self._result_detail(connection)
            )
        return distinguished_name

    def bind_computer(self, computer: str, gmsa_dn: str) -> None:
        """Associate ``computer`` with the gMSA (``msDS-HostServiceAccount``)."""

        if self._mock_directory:
            self._mock_directory.bind_computer(computer, gmsa_dn)
            return

        try:
            entry = self._find_object(computer, "computer")
        except DependencyError as exc:
            raise DirectoryWriteError(f"Unable to look up computer '{computer}': {exc}") from exc
        if entry is None:
            raise DirectoryWriteError(f"Computer '{computer}' was not found in the directory.")
        computer_dn = str(entry.entry_dn)
        self._modify_add(computer_dn, "msDS-HostServiceAccount", gmsa_dn, DirectoryWriteError,
                         f"Unable to bind computer '{computer}' to {gmsa_dn}")

    def add_spn(self, gmsa_dn: str, spn: str) -> None:
        """Add ``spn`` to the gMSA; a value the account already holds is accepted."""

        if self._mock_directory:
            self._mock_directory.add_spn(gmsa_dn, spn)
            return
        try:
            self._modify_add(gmsa_dn, "servicePrincipalName", spn, DirectoryWriteError,
                             f"Unable to register SPN '{spn}' on {gmsa_dn}", permissive=True)
        except DirectoryWriteError as exc:
            raise SpnRegistrationError(spn, str(exc)) from exc

    def _modify_add(
        self,
        dn: str,
        attribute: str,
        value: str,
        error_type: Type[ProvisioningError],
        action: str,
        permissive: bool = False,
    ) -> None:
        connection = self._conn()
        controls = [PERMISSIVE_MODIFY_CONTROL] if permissive else None
        try:
            modified = connection.modify(dn, {attribute: [(MODIFY_ADD, [value])]}, controls=controls)
        except LDAPException as exc:
            raise error_type(f"{action}: {exc}") from exc
        if modified:
            return
        if permissive and (connection.result or {}).get("result") == ATTRIBUTE_OR_VALUE_EXISTS:
            logger.info("%s already holds %s %s.", dn, attribute, value)
            return
        raise error_type(action + self._result_detail(connection))

    # Reporting -----------------------------------------------------------
    def search_accounts(self, kind: str, max_age_days: int = 90) -> List[Dict[str, Any]]:
        """Return user accounts matching one of :data:`REPORT_KINDS`."""

        if kind not in REPORT_KINDS:
            raise ValueError(f"Unknown account report '{kind}'.")
        if self._mock_directory:
            return self._mock_directory.search_accounts(kind, max_age_days)

        users = "(objectCategory=person)(objectClass=user)"
        if kind == "expired":
            threshold = _to_filetime(datetime.now(timezone.utc) - timedelta(days=max_age_days))
            search_filter = (
                f"(&{users}"
                f"(!(userAccountControl:{_UAC_AND}:={ACCOUNT_DISABLED}))"
                f"(!(userAccountControl:{_UAC_AND}:={PASSWORD_NEVER_EXPIRES}))"
                f"(pwdLastSet>=1)(pwdLastSet<={threshold}))"
            )
        elif kind == "locked":
            search_filter = f"(&{users}(lockoutTime>=1))"
        else:
            search_filter = f"(&{users}(userAccountControl:{_UAC_AND}:={PASSWORD_NEVER_EXPIRES}))"

        connection = self._conn()
        accounts: List[Dict[str, Any]] = []
        try:
            results = connection.extend.standard.paged_search(
                search_base=self.config.base_dn,
                search_filter=search_filter,
                search_scope=SUBTREE,
                attributes=["sAMAccountName", "lastLogonTimestamp"],
                paged_size=500,
                generator=True,
            )
            for entry in results:
                if entry.get("type") != "searchResEntry":
                    continue
                attributes = entry.get("attributes", {})
                accounts.append(
                    {
                        "sAMAccountName": str(attributes.get("sAMAccountName") or ""),
                        "lastLogonTimestamp": attributes.get("lastLogonTimestamp"),
                    }
                )
        except LDAPException as exc:
            raise DependencyError(f"Directory search for {kind} accounts failed: {exc}") from exc
        return accounts

    # Utilities -----------------------------------------------------------
    @staticmethod
    def _result_detail(connection: Connection) -> str:
        result = connection.result or {}
        description = result.get("description", "Unknown error")
        message = result.get("message")
        return f" ({description})." + (f" {message}" if message else "")

    @staticmethod
    def _escape_filter_value(value: str) -> str:
        replacements = {
            "\\": "\\5c",
            "*": "\\2a",
            "(": "\\28",
            ")": "\\29",
            "\0": "\\00",
        }
        return "".join(replacements.get(char, char) for char in value)


@contextlib.contextmanager
def ad_client(config: LDAPConfig) -> Iterator[ADClient]:
    client = ADClient(config)
    try:
        yield client
    finally:
        client.close()


__all__ = ["ADClient", "MockDirectory", "REPORT_KINDS", "ad_client", "gmsa_membership_descriptor"]
