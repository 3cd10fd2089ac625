"""Command line interface for the gMSA provisioning toolkit."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
import yaml

from .ad_client import ADClient, ad_client
from .capabilities import CapabilityProvider, build_capability_provider
from .config import AppConfig, config_to_dict, ensure_default_config, load_config
from .errors import ConfigurationError, ProvisioningError
from .models import SERVICE_WHITELIST, ProvisioningRequest
from .provisioning import provision_gmsa
from .report import export_account_reports
from .transcript import configure_console_logging

app = typer.Typer(help="Provision group Managed Service Accounts in Active Directory.")
config_app = typer.Typer(help="Inspect and initialise the settings file.")
app.add_typer(config_app, name="config")


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)


def _capability_provider(config: AppConfig, client: ADClient) -> CapabilityProvider:
    mock = client.mock_directory
    if mock is not None:
        return build_capability_provider(config.capability, mock.capabilities, mock.save)
    return build_capability_provider(config.capability)


def prompt_for_request() -> ProvisioningRequest:
    """Interactively collect every provisioning parameter."""

    name = typer.prompt("Service account name")
    domain = typer.prompt("Domain name (FQDN)")
    use_domain_computers = typer.confirm(
        "Allow every domain computer (Domain Computers group) to retrieve the password?",
        default=False,
    )
    principal = None
    server = None
    if not use_domain_computers:
        principal = typer.prompt("Authorized principal (computer or group name/DN)")
        server = typer.prompt("Server name")
    services = typer.prompt(
        f"Service names, comma separated ({', '.join(sorted(SERVICE_WHITELIST))})"
    )
    return ProvisioningRequest.from_dict(
        {
            "service_account_name": name,
            "domain_name": domain,
            "service_names": services,
            "authorized_principal": principal,
            "use_domain_computers_group": use_domain_computers,
            "server_name": server,
        }
    )


@app.command("provision")
def provision(
    name: Optional[str] = typer.Option(None, "--name", help="Service account name."),
    domain: Optional[str] = typer.Option(None, "--domain", help="DNS name of the domain."),
    principal: Optional[str] = typer.Option(
        None,
        "--principal",
        help="Computer or group allowed to retrieve the managed password.",
    ),
    domain_computers: bool = typer.Option(
        False,
        "--domain-computers",
        help="Authorize the Domain Computers group instead of a single principal.",
    ),
    server: Optional[str] = typer.Option(None, "--server", help="Server the account is bound to."),
    services: Optional[str] = typer.Option(
        None, "--services", help="Comma-separated services to register SPNs for."
    ),
    transcript: Optional[Path] = typer.Option(
        None, "--transcript", help="Transcript file (overrides logging.transcript_file)."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Create a gMSA, bind it to its server and register its SPNs."""

    if not any([name, domain, principal, domain_computers, server, services]):
        request = prompt_for_request()
    else:
        request = ProvisioningRequest.from_dict(
            {
                "service_account_name": name,
                "domain_name": domain,
                "service_names": services,
                "authorized_principal": principal,
                "use_domain_computers_group": domain_computers,
                "server_name": server,
            }
        )

    config = _load_configuration(config_path)
    configure_console_logging(config.logging.level)

    try:
        with ad_client(config.ldap) as client:
            result = provision_gmsa(
                request,
                client,
                _capability_provider(config, client),
                capability_name=config.capability.name,
                transcript_path=transcript or config.logging.transcript_file,
            )
    except ProvisioningError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)

    typer.echo(json.dumps(result.to_dict(), indent=2))


@app.command("report")
def report(
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", help="Root directory for exports."),
    max_age_days: Optional[int] = typer.Option(
        None, "--max-age-days", help="Password age after which an account counts as expired."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Export expired, locked-out and never-expiring accounts to dated CSV files."""

    config = _load_configuration(config_path)
    configure_console_logging(config.logging.level)

    try:
        with ad_client(config.ldap) as client:
            written = export_account_reports(
                client,
                output_dir or config.report.output_dir,
                max_age_days if max_age_days is not None else config.report.max_age_days,
            )
    except (ProvisioningError, OSError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)

    for kind, path in written.items():
        typer.echo(f"{kind}: {path}")


@config_app.command("show")
def show_config(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Print the effective configuration with secrets masked."""

    config = _load_configuration(config_path)
    typer.echo(yaml.safe_dump(config_to_dict(config), sort_keys=False, indent=2))


@config_app.command("init")
def init_config(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Where to create the settings file."
    ),
    template: Optional[Path] = typer.Option(None, "--template", help="Template to copy from."),
) -> None:
    """Create the settings file from the bundled example if it does not exist."""

    try:
        path = ensure_default_config(config_path, template)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Settings file: {path}")


def run():
    app()


if __name__ == "__main__":
    run()
