from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .fingerprint import InstallationRecord
    from .toolset_manifest import ToolInfo, ToolsetManifest


class ComponentType(str, enum.Enum):
    TOOLCHAIN_PROFILE = "ToolchainProfile"
    TOOLCHAIN_COMPONENT = "ToolchainComponent"
    TOOL = "Tool"


@dataclass
class Component:
    """One selectable/installable unit as shown to the user.

    Built fresh from a manifest (or the installation record) on every call,
    never written to disk.
    """

    name: str
    desc: str = ""
    group: Optional[str] = None
    kind: ComponentType = ComponentType.TOOL
    required: bool = False
    optional: bool = False
    installed: bool = False
    version: Optional[str] = None
    tool_installer: Optional["ToolInfo"] = None
    # Index in the list it came from, used by front-ends for stable selection.
    id: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "desc": self.desc,
            "group": self.group,
            "kind": self.kind.value,
            "required": self.required,
            "optional": self.optional,
            "installed": self.installed,
            "version": self.version,
        }


def number_components(components: List[Component]) -> List[Component]:
    for idx, c in enumerate(components):
        c.id = idx
    return components


def all_components_from_installation(
    record: "InstallationRecord", manifest: Optional["ToolsetManifest"] = None
) -> List[Component]:
    """Components of an existing installation, all marked as installed.

    The installed manifest (when available) contributes descriptions and groups.
    """

    group = manifest.toolchain_group_name() if manifest else "Rust Toolchain"
    profile_name = "default"
    profile_desc = ""
    if manifest is not None:
        profile = manifest.toolchain_profile()
        profile_name = manifest.toolchain_display_name()
        profile_desc = profile.description or ""

    components: List[Component] = []
    if record.rust is not None:
        components.append(
            Component(
                name=profile_name,
                desc=profile_desc,
                group=group,
                kind=ComponentType.TOOLCHAIN_PROFILE,
                required=True,
                installed=True,
                version=record.rust.version,
            )
        )
        for comp in record.rust.components:
            components.append(
                Component(
                    name=comp,
                    desc=(manifest.get_tool_description(comp) if manifest else None) or "",
                    group=group,
                    kind=ComponentType.TOOLCHAIN_COMPONENT,
                    optional=True,
                    installed=True,
                    version=record.rust.version,
                )
            )

    for name, rec in record.tools.items():
        components.append(
            Component(
                name=name,
                desc=(manifest.get_tool_description(name) if manifest else None) or "",
                group=manifest.group_name(name) if manifest else None,
                kind=ComponentType.TOOL,
                installed=True,
                version=rec.version,
            )
        )
    return number_components(components)
