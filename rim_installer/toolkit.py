"""Toolkits: named, versioned releases of a toolset manifest.

The distribution server lists them in `dist/distribution-manifest.toml`:

    [[packages]]
    name = "Rust Toolkit"
    version = "stable 1.80.1"
    desc = "..."
    manifest-url = "https://.../dist/stable-1.80.1.toml"

Entries are listed oldest first.
"""

from __future__ import annotations

import logging
import re
import threading
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from packaging.version import InvalidVersion, Version

from .components import Component, all_components_from_installation
from .errors import ManifestError, RimError
from .fingerprint import InstallationRecord
from .lib.download import DownloadOpt, url_join
from .lib.env import rim_dist_server
from .toolset_manifest import ToolsetManifest

logger = logging.getLogger(__name__)

UNKNOWN_TOOLKIT = "Unknown Toolkit"
UNKNOWN_VERSION = "N/A"
DIST_MANIFEST_FILENAME = "distribution-manifest.toml"

_NON_DIGIT_PREFIX = re.compile(r"^[^0-9]+")


def sanitize_version(version: str) -> str:
    """Strip a leading label such as "stable " off a version string."""

    return _NON_DIGIT_PREFIX.sub("", version.strip())


def parse_version(version: str) -> Version:
    try:
        return Version(sanitize_version(version))
    except InvalidVersion as e:
        raise RimError(f"unable to parse version '{version}'") from e


@dataclass(eq=False)
class Toolkit:
    name: str
    version: str
    desc: Optional[str] = None
    info: Optional[str] = None
    manifest_url: Optional[str] = None
    components: List[Component] = field(default_factory=list)

    # Same product release, regardless of where the object came from.
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Toolkit):
            return NotImplemented
        return self.name == other.name and self.version == other.version

    def __hash__(self) -> int:
        return hash((self.name, self.version))

    @classmethod
    def from_dist_package(cls, data: Dict[str, Any]) -> "Toolkit":
        ctx = "distribution package"
        name = data.get("name")
        version = data.get("version")
        url = data.get("manifest-url")
        if not isinstance(name, str) or not isinstance(version, str) or not isinstance(url, str):
            raise ManifestError(f"{ctx} requires string 'name', 'version' and 'manifest-url' fields")
        return cls(
            name=name,
            version=version,
            desc=data.get("desc"),
            info=data.get("info", data.get("notes")),
            manifest_url=url,
        )

    @classmethod
    def from_installation(cls, install_dir: Path) -> Optional["Toolkit"]:
        """The toolkit installed in `install_dir`, None when nothing is installed."""

        if not InstallationRecord.exists(install_dir):
            return None
        record = InstallationRecord.load_from_dir(install_dir)
        manifest: Optional[ToolsetManifest] = None
        if (Path(install_dir) / ToolsetManifest.FILENAME).is_file():
            try:
                manifest = ToolsetManifest.load_from_install_dir(install_dir)
            except ManifestError as e:
                logger.warning("Installed manifest is unreadable, descriptions unavailable: %s", e)
        return cls(
            name=record.name or UNKNOWN_TOOLKIT,
            version=record.version or UNKNOWN_VERSION,
            components=all_components_from_installation(record, manifest),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "desc": self.desc,
            "info": self.info,
            "manifestURL": self.manifest_url,
            "components": [c.to_dict() for c in self.components],
        }


def parse_dist_manifest(text: str) -> List[Toolkit]:
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise ManifestError(f"malformed distribution manifest: {e}") from e
    packages = data.get("packages", [])
    if not isinstance(packages, list):
        raise ManifestError("'packages' of the distribution manifest must be an array of tables")
    return [Toolkit.from_dist_package(p) for p in packages]


class InstalledToolkitCache:
    """Caches the installed toolkit to avoid re-reading the record on every query."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._toolkit: Optional[Toolkit] = None
        self._loaded = False

    def get(self, install_dir: Path, *, reload: bool = False) -> Optional[Toolkit]:
        with self._lock:
            if self._loaded and not reload:
                return self._toolkit
            self._toolkit = Toolkit.from_installation(install_dir)
            self._loaded = True
            return self._toolkit

    def invalidate(self) -> None:
        with self._lock:
            self._toolkit = None
            self._loaded = False


def toolkits_from_server(
    *,
    insecure: bool = False,
    server: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[Toolkit]:
    """Every toolkit the distribution server provides, newest first."""

    url = url_join(server or rim_dist_server(), f"dist/{DIST_MANIFEST_FILENAME}")
    logger.info("Fetching %s", DIST_MANIFEST_FILENAME)
    raw = DownloadOpt("distribution manifest", insecure=insecure, transport=transport).blocking_read(url)
    toolkits = list(reversed(parse_dist_manifest(raw)))
    logger.debug(
        "Server provides %d toolkits: %s",
        len(toolkits),
        ", ".join(f"{tk.name} ({tk.version})" for tk in toolkits),
    )
    return toolkits


def installable_toolkits(installed: Optional[Toolkit], **kwargs: Any) -> List[Toolkit]:
    """Toolkits on the server except the installed one."""

    return [tk for tk in toolkits_from_server(**kwargs) if installed is None or tk != installed]


def latest_installable_toolkit(installed: Toolkit, **kwargs: Any) -> Optional[Toolkit]:
    """The newest server toolkit of the same product, if it is newer than `installed`.

    Raises `RimError` when either version cannot be parsed.
    """

    latest = next((tk for tk in toolkits_from_server(**kwargs) if tk.name == installed.name), None)
    if latest is None:
        logger.info("No available updates for %s", installed.name)
        return None

    if parse_version(latest.version) > parse_version(installed.version):
        return latest
    logger.info("Latest version of %s (%s) is already installed", installed.name, installed.version)
    return None
