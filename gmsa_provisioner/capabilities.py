"""Ensure the directory-management capability is present on the host."""
from __future__ import annotations

import logging
import shlex
import subprocess
from typing import Any, Callable, Dict, List, MutableMapping, Optional, Tuple

from .config import CapabilityConfig
from .errors import ConfigurationError, DependencyError

logger = logging.getLogger(__name__)

# Windows client SKUs ship RSAT as a capability rather than a server feature.
RSAT_CLIENT_CAPABILITY = "Rsat.ActiveDirectory.DS-LDS.Tools~~~~0.0.1.0"


class CapabilityProvider:
    """Interface over the host's installed-feature state.

    ``is_installed`` and ``is_active`` report state; ``install`` and
    ``activate`` change it and raise on failure.
    """

    def is_installed(self, name: str) -> bool:
        raise NotImplementedError

    def is_active(self, name: str) -> bool:
        raise NotImplementedError

    def install(self, name: str) -> None:
        raise NotImplementedError

    def activate(self, name: str) -> None:
        raise NotImplementedError


class WindowsFeatureProvider(CapabilityProvider):
    """Query and install a PowerShell module through Windows feature management."""

    def __init__(
        self,
        feature: str = "RSAT-AD-PowerShell",
        timeout: int = 600,
        executable: str = "powershell",
    ):
        self.feature = feature
        self.timeout = timeout
        self.executable = executable

    def _run(self, script: str) -> subprocess.CompletedProcess:
        command = [self.executable, "-NoProfile", "-NonInteractive", "-Command", script]
        logger.debug("Running %s", " ".join(shlex.quote(part) for part in command))
        try:
            return subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise RuntimeError(f"PowerShell not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise RuntimeError(f"PowerShell command timed out after {self.timeout}s.") from exc

    def _succeeds(self, script: str) -> bool:
        return self._run(script).returncode == 0

    def _require(self, script: str, action: str) -> None:
        completed = self._run(script)
        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or "").strip()
            raise RuntimeError(
                f"{action} failed with exit code {completed.returncode}."
                + (f" {detail}" if detail else "")
            )

    def is_installed(self, name: str) -> bool:
        return self._succeeds(
            f"if (Get-Module -ListAvailable -Name '{name}') {{ exit 0 }} else {{ exit 1 }}"
        )

    def is_active(self, name: str) -> bool:
        # Each call is a fresh session, so a clean import is the observable
        # definition of "active".
        return self._succeeds(f"Import-Module -Name '{name}' -ErrorAction Stop")

    def install(self, name: str) -> None:
        script = (
            "if (Get-Command Install-WindowsFeature -ErrorAction SilentlyContinue) { "
            f"$r = Install-WindowsFeature -Name '{self.feature}' -ErrorAction Stop; "
            "if (-not $r.Success) { exit 1 } "
            "} else { "
            f"Add-WindowsCapability -Online -Name '{RSAT_CLIENT_CAPABILITY}' -ErrorAction Stop "
            "| Out-Null }"
        )
        self._require(script, f"Installing '{self.feature}' for module '{name}'")

    def activate(self, name: str) -> None:
        self._require(
            f"Import-Module -Name '{name}' -Force -ErrorAction Stop",
            f"Importing module '{name}'",
        )


class StaticCapabilityProvider(CapabilityProvider):
    """Capability state held in a mapping (mock directories and tests)."""

    def __init__(
        self,
        states: Optional[MutableMapping[str, Dict[str, Any]]] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.states: MutableMapping[str, Dict[str, Any]] = states if states is not None else {}
        self.on_change = on_change
        self.calls: List[Tuple[str, str]] = []

    def _state(self, name: str) -> Dict[str, Any]:
        return self.states.setdefault(name, {"installed": False, "active": False})

    def is_installed(self, name: str) -> bool:
        self.calls.append(("is_installed", name))
        return bool(self._state(name).get("installed"))

    def is_active(self, name: str) -> bool:
        self.calls.append(("is_active", name))
        return bool(self._state(name).get("active"))

    def install(self, name: str) -> None:
        self.calls.append(("install", name))
        state = self._state(name)
        if state.get("installable", True) is False:
            raise RuntimeError(f"Capability '{name}' cannot be installed on this host.")
        state["installed"] = True
        self._changed()

    def activate(self, name: str) -> None:
        self.calls.append(("activate", name))
        state = self._state(name)
        if not state.get("installed"):
            raise RuntimeError(f"Capability '{name}' is not installed.")
        if state.get("activatable", True) is False:
            raise RuntimeError(f"Capability '{name}' failed to load.")
        state["active"] = True
        self._changed()

    def _changed(self) -> None:
        if self.on_change:
            self.on_change()


class NullCapabilityProvider(CapabilityProvider):
    """Reports every capability as present; for hosts that only speak LDAP."""

    def is_installed(self, name: str) -> bool:
        return True

    def is_active(self, name: str) -> bool:
        return True

    def install(self, name: str) -> None:
        return None

    def activate(self, name: str) -> None:
        return None


def ensure_capability(provider: CapabilityProvider, name: str) -> None:
    """Make sure capability ``name`` is installed and active, installing it if needed."""

    try:
        if provider.is_installed(name):
            if provider.is_active(name):
                logger.info("Module '%s' is available.", name)
                return
            logger.info("Module '%s' is installed but not loaded; activating it...", name)
            provider.activate(name)
        else:
            logger.warning(
                "Module '%s' is not installed; installing it. This changes the host's installed features.",
                name,
            )
            provider.install(name)
            logger.warning("Module '%s' was installed on this host.", name)
            provider.activate(name)
    except DependencyError:
        raise
    except RuntimeError as exc:
        raise DependencyError(f"Unable to make module '{name}' available: {exc}") from exc

    if not provider.is_active(name):
        raise DependencyError(f"Module '{name}' is still unavailable after activation.")
    logger.info("Module '%s' is ready.", name)


def build_capability_provider(
    config: CapabilityConfig,
    states: Optional[MutableMapping[str, Dict[str, Any]]] = None,
    on_change: Optional[Callable[[], None]] = None,
) -> CapabilityProvider:
    if config.provider == "windows-feature":
        return WindowsFeatureProvider(feature=config.feature, timeout=config.timeout)
    if config.provider == "static":
        return StaticCapabilityProvider(states, on_change=on_change)
    if config.provider == "none":
        return NullCapabilityProvider()
    raise ConfigurationError(f"Unknown capability provider '{config.provider}'.")


__all__ = [
    "CapabilityProvider",
    "NullCapabilityProvider",
    "StaticCapabilityProvider",
    "WindowsFeatureProvider",
    "build_capability_provider",
    "ensure_capability",
]
