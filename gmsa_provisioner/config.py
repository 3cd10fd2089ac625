"""Configuration loading utilities for the gMSA provisioning toolkit."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "GMSA_CONFIG"
ENV_PREFIX = "GMSA_"

CAPABILITY_PROVIDERS = ("windows-feature", "static", "none")


@dataclass
class LDAPConfig:
    """Settings required to connect to Active Directory via LDAP."""

    server_uri: str
    base_dn: str
    user_dn: Optional[str] = None
    password: Optional[str] = None
    use_ssl: bool = True
    connect_timeout: int = 10
    receive_timeout: int = 30
    gmsa_container: Optional[str] = None
    mock_data_file: Optional[Path] = None

    @property
    def managed_service_accounts_dn(self) -> str:
        return self.gmsa_container or f"CN=Managed Service Accounts,{self.base_dn}"


@dataclass
class CapabilityConfig:
    """Which directory-management capability to ensure and how."""

    provider: str = "windows-feature"
    name: str = "ActiveDirectory"
    feature: str = "RSAT-AD-PowerShell"
    timeout: int = 600


@dataclass
class LoggingConfig:
    """Console verbosity and the audit transcript location."""

    transcript_file: Optional[Path] = field(
        default_factory=lambda: Path("logs/gmsa_provisioning.log")
    )
    level: str = "INFO"


@dataclass
class ReportConfig:
    """Settings for the expired/locked/never-expiring account export."""

    output_dir: Path = Path("reports")
    max_age_days: int = 90


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    ldap: LDAPConfig
    capability: CapabilityConfig = field(default_factory=CapabilityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    report: ReportConfig = field(default_factory=ReportConfig)


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        try:
            payload = yaml.safe_load(file) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Configuration file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Configuration file '{path}' must contain a mapping.")
    return payload


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with ``GMSA_SECTION__KEY`` environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key == ENV_CONFIG_PATH:
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    # The default location is optional: environment variables alone are enough.
    if resolved_path == DEFAULT_CONFIG_PATH and not resolved_path.exists():
        config_dict: Dict[str, Any] = {}
    else:
        config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _get_required(config_dict: Dict[str, Any], key: str) -> Dict[str, Any]:
    try:
        section = config_dict[key]
    except KeyError as exc:
        raise ConfigurationError(f"Missing required configuration section: '{key}'.") from exc
    if not isinstance(section, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping.")
    return section


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    config_dict = _load_config_dict(path)
    ldap_section = _get_required(config_dict, "ldap")

    try:
        ldap_config = LDAPConfig(
            server_uri=str(ldap_section["server_uri"]),
            base_dn=str(ldap_section["base_dn"]),
            user_dn=_optional_str(ldap_section.get("user_dn")),
            password=_optional_str(ldap_section.get("password")),
            use_ssl=_to_bool(ldap_section.get("use_ssl", True)),
            connect_timeout=_to_int(ldap_section.get("connect_timeout", 10)),
            receive_timeout=_to_int(ldap_section.get("receive_timeout", 30)),
            gmsa_container=_optional_str(ldap_section.get("gmsa_container")),
            mock_data_file=_optional_path(ldap_section.get("mock_data_file")),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Missing LDAP configuration key: {exc}.") from exc
    except ValueError as exc:
        raise ConfigurationError(f"Invalid LDAP configuration value: {exc}.") from exc

    capability_section = config_dict.get("capability") or {}
    defaults = CapabilityConfig()
    try:
        capability_config = CapabilityConfig(
            provider=str(capability_section.get("provider", defaults.provider)).strip().lower(),
            name=str(capability_section.get("name", defaults.name)),
            feature=str(capability_section.get("feature", defaults.feature)),
            timeout=_to_int(capability_section.get("timeout", defaults.timeout)),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid capability configuration value: {exc}.") from exc
    if capability_config.provider not in CAPABILITY_PROVIDERS:
        raise ConfigurationError(
            f"Unknown capability provider '{capability_config.provider}'. "
            f"Expected one of: {', '.join(CAPABILITY_PROVIDERS)}."
        )

    logging_section = config_dict.get("logging") or {}
    if "transcript_file" in logging_section:
        transcript = _optional_path(logging_section.get("transcript_file"))
    else:
        transcript = LoggingConfig().transcript_file
    logging_config = LoggingConfig(
        transcript_file=transcript,
        level=str(logging_section.get("level", "INFO")).upper(),
    )

    report_section = config_dict.get("report") or {}
    try:
        report_config = ReportConfig(
            output_dir=_optional_path(report_section.get("output_dir")) or ReportConfig().output_dir,
            max_age_days=_to_int(report_section.get("max_age_days", ReportConfig().max_age_days)),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid report configuration value: {exc}.") from exc

    return AppConfig(
        ldap=ldap_config,
        capability=capability_config,
        logging=logging_config,
        report=report_config,
    )


def config_to_dict(config: AppConfig, mask_secrets: bool = True) -> Dict[str, Any]:
    """Serialize an :class:`AppConfig` back to primitive types for display."""

    password = config.ldap.password
    if password and mask_secrets:
        password = "********"

    return {
        "ldap": {
            "server_uri": config.ldap.server_uri,
            "base_dn": config.ldap.base_dn,
            "user_dn": config.ldap.user_dn or "",
            "password": password or "",
            "use_ssl": config.ldap.use_ssl,
            "connect_timeout": config.ldap.connect_timeout,
            "receive_timeout": config.ldap.receive_timeout,
            "gmsa_container": config.ldap.managed_service_accounts_dn,
            **(
                {"mock_data_file": str(config.ldap.mock_data_file)}
                if config.ldap.mock_data_file
                else {}
            ),
        },
        "capability": {
            "provider": config.capability.provider,
            "name": config.capability.name,
            "feature": config.capability.feature,
            "timeout": config.capability.timeout,
        },
        "logging": {
            "transcript_file": str(config.logging.transcript_file or ""),
            "level": config.logging.level,
        },
        "report": {
            "output_dir": str(config.report.output_dir),
            "max_age_days": config.report.max_age_days,
        },
    }


__all__ = [
    "AppConfig",
    "CapabilityConfig",
    "ConfigurationError",
    "LDAPConfig",
    "LoggingConfig",
    "ReportConfig",
    "config_to_dict",
    "ensure_default_config",
    "load_config",
]
