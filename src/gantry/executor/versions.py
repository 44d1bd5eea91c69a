"""Read the provider and module version set a working directory was initialised with."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

logger = logging.getLogger(__name__)

# provider "registry.terraform.io/hashicorp/aws" {
#   version     = "5.31.0"
_PROVIDER_RE = re.compile(
    r'provider\s+"(?P<source>[^"]+)"\s*\{[^}]*?\bversion\s*=\s*"(?P<version>[^"]+)"',
    re.DOTALL,
)


def read_version_set(workdir: Path) -> dict[str, str]:
    """Return ``{"provider:<source>": version, "module:<key>": version-or-source}``."""
    versions: dict[str, str] = {}

    lock_file = workdir / ".terraform.lock.hcl"
    if lock_file.exists():
        for match in _PROVIDER_RE.finditer(lock_file.read_text()):
            versions[f"provider:{match['source']}"] = match["version"]

    modules_manifest = workdir / ".terraform" / "modules" / "modules.json"
    if modules_manifest.exists():
        try:
            manifest = json.loads(modules_manifest.read_text())
        except json.JSONDecodeError:
            logger.warning("Unreadable module manifest at %s", modules_manifest)
            manifest = {}
        for module in manifest.get("Modules", []):
            key = module.get("Key")
            if key:
                versions[f"module:{key}"] = module.get("Version") or module.get("Source", "")

    return versions
