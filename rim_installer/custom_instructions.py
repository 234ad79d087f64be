"""Bespoke install routines for tools that need more than a copy.

Each routine is keyed by tool name and also knows how to tell whether the
tool is already present on the machine (installed by the user, not by us).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List

from .lib.command import cmd_exists
from .lib.fs import move_to, remove_path

if TYPE_CHECKING:
    from .install import InstallConfiguration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CustomInstruction:
    name: str
    # program on PATH that reveals an existing installation
    detect_program: str
    install: Callable[[str, Path, "InstallConfiguration"], List[Path]]
    uninstall: Callable[[str, "InstallConfiguration"], None]


def _install_into_tools_dir(name: str, path: Path, config: "InstallConfiguration") -> List[Path]:
    dest = config.tools_dir / name
    move_to(path, dest, force=config.is_update)
    config.path_editor.add(dest / "bin")
    return [dest]


def _uninstall_from_tools_dir(name: str, config: "InstallConfiguration") -> None:
    dest = config.tools_dir / name
    try:
        config.path_editor.remove(dest / "bin")
    except OSError as e:
        logger.warning("Unable to remove %s from PATH: %s", dest / "bin", e)
    remove_path(dest)


_REGISTRY: Dict[str, CustomInstruction] = {
    "vscode": CustomInstruction("vscode", "code", _install_into_tools_dir, _uninstall_from_tools_dir),
    "mingw64": CustomInstruction("mingw64", "gcc", _install_into_tools_dir, _uninstall_from_tools_dir),
}


def is_supported(name: str) -> bool:
    return name in _REGISTRY


def is_installed(name: str) -> bool:
    instruction = _REGISTRY.get(name)
    return instruction is not None and cmd_exists(instruction.detect_program)


def install(name: str, path: Path, config: "InstallConfiguration") -> List[Path]:
    if name not in _REGISTRY:
        raise KeyError(f"no custom install instruction for '{name}'")
    logger.info("Installing %s with its custom instruction", name)
    return _REGISTRY[name].install(name, path, config)


def uninstall(name: str, config: "InstallConfiguration") -> None:
    if name not in _REGISTRY:
        raise KeyError(f"no custom uninstall instruction for '{name}'")
    logger.info("Uninstalling %s with its custom instruction", name)
    _REGISTRY[name].uninstall(name, config)
