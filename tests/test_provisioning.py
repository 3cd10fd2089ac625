"""Tests for the gMSA provisioning workflow."""

from dataclasses import replace

import pytest

from conftest import DOMAIN_COMPUTERS_DN, SERVER_DN, FakeDirectory
from gmsa_provisioner.capabilities import StaticCapabilityProvider
from gmsa_provisioner.errors import (
    ConfigurationError,
    DependencyError,
    DirectoryWriteError,
    InvalidServiceNameError,
    PrincipalNotFoundError,
    SpnRegistrationError,
)
from gmsa_provisioner.models import DOMAIN_COMPUTERS_RID
from gmsa_provisioner.provisioning import WorkflowState, provision_gmsa, register_spns, resolve_principal


def _run(request, directory, capabilities, **kwargs):
    states = []
    try:
        result = provision_gmsa(request, directory, capabilities, on_state=states.append, **kwargs)
    except Exception as exc:
        return None, states, exc
    return result, states, None


class TestValidationFailures:
    @pytest.mark.parametrize(
        "changes",
        [
            {"use_domain_computers_group": True},
            {"authorized_principal": None},
        ],
    )
    def test_no_directory_call_on_configuration_error(self, server_request, directory, capabilities, changes):
        _, states, error = _run(replace(server_request, **changes), directory, capabilities)

        assert isinstance(error, ConfigurationError)
        assert directory.calls == []
        assert capabilities.calls == []
        assert states == [WorkflowState.INIT, WorkflowState.FAILED]

    def test_invalid_service_aborts_before_mutation(self, server_request, directory, capabilities):
        request = replace(server_request, service_names="HTTP, Bogus, Other")
        _, states, error = _run(request, directory, capabilities)

        assert isinstance(error, InvalidServiceNameError)
        assert error.service_name == "Bogus"
        assert directory.mutations == []
        assert states[-1] is WorkflowState.FAILED
        assert WorkflowState.SERVICES_VALIDATED not in states


class TestServerPath:
    def test_registers_four_spns_in_order(self, server_request, directory, capabilities):
        result, states, error = _run(server_request, directory, capabilities)

        assert error is None
        assert directory.spns == [
            "HTTP/Server1.corp.local",
            "HTTP/Server1",
            "HOST/Server1.corp.local",
            "HOST/Server1",
        ]
        assert result.spns == directory.spns
        assert result.server_bound is True
        assert states == [
            WorkflowState.INIT,
            WorkflowState.VALIDATED,
            WorkflowState.MODULE_READY,
            WorkflowState.PRINCIPAL_RESOLVED,
            WorkflowState.SERVICES_VALIDATED,
            WorkflowState.ACCOUNT_CREATED,
            WorkflowState.SERVER_BOUND,
            WorkflowState.SPNS_REGISTERED,
            WorkflowState.COMPLETED,
        ]

    def test_whitespace_in_services_is_ignored(self, server_request, capabilities):
        spaced, compact = FakeDirectory(), FakeDirectory()
        provision_gmsa(replace(server_request, service_names=" HTTP , HOST "), spaced, capabilities)
        provision_gmsa(server_request, compact, capabilities)

        assert spaced.calls == compact.calls

    def test_account_created_with_verbatim_dns_host_name(self, server_request, directory, capabilities):
        provision_gmsa(server_request, directory, capabilities)

        create = [call for call in directory.calls if call[0] == "create_gmsa"]
        assert create == [("create_gmsa", "gmsaWeb", "gmsaWeb.corp.local", SERVER_DN)]

    def test_explicit_principal_is_not_looked_up(self, server_request, directory, capabilities):
        provision_gmsa(server_request, directory, capabilities)

        assert not any(call[0] == "find_group_by_rid" for call in directory.calls)

    def test_binding_precedes_spn_registration(self, server_request, directory, capabilities):
        provision_gmsa(server_request, directory, capabilities)

        names = [call[0] for call in directory.mutations]
        assert names == ["create_gmsa", "bind_computer", "add_spn", "add_spn", "add_spn", "add_spn"]
        assert directory.mutations[1][1] == SERVER_DN

    def test_duplicate_services_are_registered_again(self, server_request, directory, capabilities):
        provision_gmsa(replace(server_request, service_names="HTTP,HTTP"), directory, capabilities)

        assert len(directory.spns) == 4


class TestDomainComputersPath:
    def test_no_binding_and_no_spns(self, domain_request, directory, capabilities):
        result, states, error = _run(domain_request, directory, capabilities)

        assert error is None
        assert [call[0] for call in directory.mutations] == ["create_gmsa"]
        assert result.spns == []
        assert result.server_bound is False
        assert WorkflowState.SERVER_BOUND not in states
        assert WorkflowState.SPNS_REGISTERED not in states
        assert states[-1] is WorkflowState.COMPLETED

    def test_group_resolved_by_well_known_rid(self, domain_request, directory, capabilities):
        result = provision_gmsa(domain_request, directory, capabilities)

        assert ("find_group_by_rid", DOMAIN_COMPUTERS_RID) in directory.calls
        assert result.principal.distinguished_name == DOMAIN_COMPUTERS_DN
        assert directory.mutations[0][3] == DOMAIN_COMPUTERS_DN

    def test_missing_group_raises_and_creates_nothing(self, domain_request, capabilities):
        directory = FakeDirectory(group=None)
        _, states, error = _run(domain_request, directory, capabilities)

        assert isinstance(error, PrincipalNotFoundError)
        assert directory.mutations == []
        assert states[-1] is WorkflowState.FAILED

    def test_resolve_principal_keeps_explicit_value_verbatim(self, server_request, directory):
        principal = resolve_principal(replace(server_request, authorized_principal="web01$"), directory)

        assert principal.distinguished_name == "web01$"
        assert directory.calls == []


class TestDirectoryFailures:
    def test_creation_rejected(self, server_request, directory, capabilities):
        directory.fail_create = "entryAlreadyExists"
        _, states, error = _run(server_request, directory, capabilities)

        assert isinstance(error, DirectoryWriteError)
        assert "entryAlreadyExists" in str(error)
        assert [call[0] for call in directory.mutations] == ["create_gmsa"]
        assert states[-1] is WorkflowState.FAILED

    def test_binding_rejected_reports_created_account(self, server_request, directory, capabilities):
        directory.fail_bind = "insufficientAccessRights"
        _, _, error = _run(server_request, directory, capabilities)

        assert isinstance(error, DirectoryWriteError)
        assert "has not been removed" in str(error)
        assert directory.spns == []

    def test_spn_failure_stops_without_rollback(self, server_request, directory, capabilities):
        directory.reject_spns = {"HOST/Server1.corp.local"}
        _, states, error = _run(server_request, directory, capabilities)

        assert isinstance(error, SpnRegistrationError)
        assert error.spn == "HOST/Server1.corp.local"
        assert "HTTP/Server1.corp.local, HTTP/Server1" in str(error)
        assert directory.spns == ["HTTP/Server1.corp.local", "HTTP/Server1", "HOST/Server1.corp.local"]
        assert WorkflowState.ACCOUNT_CREATED in states
        assert states[-1] is WorkflowState.FAILED

    def test_register_spns_wraps_generic_errors(self, server_request):
        class Broken(FakeDirectory):
            def add_spn(self, gmsa_dn, spn):
                raise RuntimeError("server unavailable")

        with pytest.raises(SpnRegistrationError, match="server unavailable"):
            register_spns(server_request, ["HTTP"], "CN=gmsaWeb", Broken())


class TestCapability:
    def test_missing_capability_is_installed_then_activated(self, server_request, directory):
        provider = StaticCapabilityProvider()
        provision_gmsa(server_request, directory, provider)

        actions = [name for name, _ in provider.calls if name in {"install", "activate"}]
        assert actions == ["install", "activate"]

    def test_uninstallable_capability_aborts_run(self, server_request, directory):
        provider = StaticCapabilityProvider({"ActiveDirectory": {"installed": False, "installable": False}})
        _, states, error = _run(server_request, directory, provider)

        assert isinstance(error, DependencyError)
        assert directory.calls == []
        assert WorkflowState.MODULE_READY not in states


class TestTranscript:
    def _handlers(self):
        import logging

        return [h for h in logging.getLogger("gmsa_provisioner").handlers if isinstance(h, logging.FileHandler)]

    def test_transcript_captures_progress(self, tmp_path, server_request, directory, capabilities):
        log_file = tmp_path / "run.log"
        provision_gmsa(server_request, directory, capabilities, transcript_path=log_file)

        content = log_file.read_text(encoding="utf-8")
        assert "Creating gMSA gmsaWeb" in content
        assert "Registering SPN HTTP/Server1.corp.local" in content
        assert self._handlers() == []

    @pytest.mark.parametrize(
        "setup",
        [
            lambda d, r: (d, replace(r, service_names="NOPE")),
            lambda d, r: (FakeDirectory(group=None), replace(r, use_domain_computers_group=True, authorized_principal=None)),
            lambda d, r: (setattr(d, "fail_create", "boom") or d, r),
            lambda d, r: (setattr(d, "fail_bind", "boom") or d, r),
            lambda d, r: (setattr(d, "reject_spns", {"HTTP/Server1"}) or d, r),
        ],
    )
    def test_transcript_released_on_failure(self, tmp_path, server_request, directory, capabilities, setup):
        directory, request = setup(directory, server_request)
        log_file = tmp_path / "run.log"
        _, _, error = _run(request, directory, capabilities, transcript_path=log_file)

        assert error is not None
        assert self._handlers() == []
        assert "Provisioning failed" in log_file.read_text(encoding="utf-8")

    def test_transcript_released_on_capability_failure(self, tmp_path, server_request, directory):
        provider = StaticCapabilityProvider({"ActiveDirectory": {"installed": False, "installable": False}})
        log_file = tmp_path / "run.log"
        _, states, error = _run(server_request, directory, provider, transcript_path=log_file)

        assert isinstance(error, DependencyError)
        assert states[-1] is WorkflowState.FAILED
        assert self._handlers() == []
        assert "Provisioning failed" in log_file.read_text(encoding="utf-8")

    def test_validation_failure_never_opens_transcript(self, tmp_path, server_request, directory, capabilities):
        log_file = tmp_path / "run.log"
        _run(replace(server_request, authorized_principal=None), directory, capabilities, transcript_path=log_file)

        assert not log_file.exists()
        assert self._handlers() == []

    def test_unwritable_transcript_does_not_block_run(self, tmp_path, server_request, directory, capabilities):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("", encoding="utf-8")

        result = provision_gmsa(
            server_request, directory, capabilities, transcript_path=blocker / "run.log"
        )

        assert len(result.spns) == 4
        assert self._handlers() == []
