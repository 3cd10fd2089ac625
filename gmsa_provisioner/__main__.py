"""Entry point for ``python -m gmsa_provisioner``."""
from __future__ import annotations

import sys

# import name -> distribution name
_REQUIRED = {"typer": "typer", "yaml": "PyYAML", "ldap3": "ldap3", "impacket": "impacket"}

try:
    from .cli import run
except ModuleNotFoundError as exc:  # pragma: no cover
    missing = (getattr(exc, "name", None) or "").split(".")[0]
    if missing in _REQUIRED:
        sys.stderr.write(
            f"Missing dependency '{_REQUIRED[missing]}'. Install the project with\n"
            "    pip install -e .\n"
        )
        raise SystemExit(1) from exc
    raise

run()
