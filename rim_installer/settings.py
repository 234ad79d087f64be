from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .lib.env import DEFAULTS, default_install_dir

logger = logging.getLogger(__name__)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to JSON for unknown extensions.
    return "json"


def load_settings_file(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}

    fmt = _detect_format(p)
    text = p.read_text(encoding="utf-8")
    data: Any
    if fmt in {"yaml", "yml"}:
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)

    if not isinstance(data, dict):
        raise ValueError(f"Settings file must be an object/dict, got {type(data)}")

    return data


def ensure_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    """Fill required keys with sane defaults (without overriding user values)."""

    data.setdefault("install_dir", str(default_install_dir()))
    data.setdefault("rustup_dist_server", DEFAULTS.rustup_dist_server)
    data.setdefault("rustup_update_root", DEFAULTS.rustup_update_root)
    # Registry replacement in cargo's config.toml, both must be set to take effect.
    data.setdefault("cargo_registry_name", None)
    data.setdefault("cargo_registry_url", None)
    data.setdefault("insecure", False)
    data.setdefault("no_modify_path", False)
    # Empty means "everything that is required or not optional".
    data.setdefault("components", [])
    data.setdefault("manifest", None)
    return data


@dataclass
class InstallSettings:
    install_dir: Path
    rustup_dist_server: str = DEFAULTS.rustup_dist_server
    rustup_update_root: str = DEFAULTS.rustup_update_root
    cargo_registry_name: Optional[str] = None
    cargo_registry_url: Optional[str] = None
    insecure: bool = False
    no_modify_path: bool = False
    components: List[str] = field(default_factory=list)
    # Path or URL of a toolset manifest, None means the baked-in one.
    manifest: Optional[str] = None

    @property
    def cargo_registry(self) -> Optional[tuple[str, str]]:
        if self.cargo_registry_name and self.cargo_registry_url:
            return self.cargo_registry_name, self.cargo_registry_url
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstallSettings":
        data = ensure_defaults(dict(data))
        components = data["components"] or []
        if not isinstance(components, list):
            raise ValueError("'components' must be a list of component names")
        return cls(
            install_dir=Path(data["install_dir"]).expanduser(),
            rustup_dist_server=str(data["rustup_dist_server"]),
            rustup_update_root=str(data["rustup_update_root"]),
            cargo_registry_name=data["cargo_registry_name"],
            cargo_registry_url=data["cargo_registry_url"],
            insecure=bool(data["insecure"]),
            no_modify_path=bool(data["no_modify_path"]),
            components=[str(c) for c in components],
            manifest=data["manifest"],
        )

    @classmethod
    def load(cls, path: Optional[str]) -> "InstallSettings":
        data = load_settings_file(path) if path else {}
        if path:
            logger.info("Loaded install settings from %s", path)
        return cls.from_dict(data)
