from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Union

from . import custom_instructions
from .errors import ClassifyError, CommandError, InstallError
from .fingerprint import ToolRecord
from .lib.command import run_cmd, which
from .lib.env import CARGO_HOME, exe
from .lib.fs import copy_file_to, is_executable, move_to, remove_path, walk_dir

if TYPE_CHECKING:
    from .install import InstallConfiguration

logger = logging.getLogger(__name__)

# Fallback order matters: forks first, upstream `code` last.
VSCODE_FAMILY = ("hwcode", "wecode", "code-exploration", "code-oss", "code")


class PluginType(str, enum.Enum):
    VSIX = "vsix"

    @classmethod
    def from_extension(cls, ext: str) -> "PluginType":
        try:
            return cls(ext.lower())
        except ValueError as e:
            raise ClassifyError(f"unsupported plugin file type '{ext}'") from e

    def _install_or_uninstall(self, plugin: Path, uninstall: bool) -> None:
        op = "uninstall" if uninstall else "install"
        for program in VSCODE_FAMILY:
            resolved = which(program)
            if resolved is None:
                continue
            logger.info("%s extension %s using %s", op.capitalize() + "ing", plugin, program)
            try:
                run_cmd([resolved, f"--{op}-extension", str(plugin)])
            except CommandError as e:
                if not uninstall:
                    raise
                # the editor (or its extension registry) may already be gone
                logger.warning("Skipping uninstall of extension %s with %s: %s", plugin, program, e)

    def install_plugin(self, plugin: Path) -> None:
        self._install_or_uninstall(plugin, uninstall=False)

    def uninstall_plugin(self, plugin: Path) -> None:
        self._install_or_uninstall(plugin, uninstall=True)


@dataclass
class Executables:
    """Pre-built programs, copied into the shared binary directory."""

    name: str
    paths: List[Path] = field(default_factory=list)
    kind = "executables"

    def install(self, config: "InstallConfiguration") -> ToolRecord:
        copied = [copy_file_to(p, config.cargo_bin, overwrite=config.is_update) for p in self.paths]
        return ToolRecord.with_paths(copied, kind=self.kind)

    def uninstall(self, config: "InstallConfiguration") -> None:
        for p in self.paths:
            if not p.exists():
                logger.warning("%s: '%s' is already gone", self.name, p)
                continue
            p.unlink()


@dataclass
class DirWithBin:
    """A directory with a `bin/` subfolder: moved into the tools dir, `bin/` goes on PATH."""

    name: str
    path: Path
    kind = "dir-with-bin"

    def install(self, config: "InstallConfiguration") -> ToolRecord:
        dest = config.tools_dir / self.name
        move_to(self.path, dest, force=config.is_update)
        config.path_editor.add(dest / "bin")
        return ToolRecord.with_paths([dest], kind=self.kind)

    def uninstall(self, config: "InstallConfiguration") -> None:
        # PATH first: a dangling PATH entry is worse than a leftover directory.
        bin_dir = self.path / "bin"
        try:
            config.path_editor.remove(bin_dir)
        except OSError as e:
            logger.warning("Unable to remove '%s' from PATH: %s", bin_dir, e)
        remove_path(self.path)


@dataclass
class Custom:
    name: str
    path: Optional[Path] = None
    kind = "custom"

    def install(self, config: "InstallConfiguration") -> ToolRecord:
        if self.path is None:
            raise InstallError(f"install {self.name}", "no source path")
        paths = custom_instructions.install(self.name, self.path, config)
        return ToolRecord.with_paths(paths, kind=self.kind)

    def uninstall(self, config: "InstallConfiguration") -> None:
        custom_instructions.uninstall(self.name, config)


@dataclass
class Plugin:
    """Editor extension package, handed to the first editor found on PATH."""

    name: str
    plugin_type: PluginType
    path: Path
    kind = "plugin"

    def install(self, config: "InstallConfiguration") -> ToolRecord:
        self.plugin_type.install_plugin(self.path)
        # keep a copy, uninstalling needs the package file
        backup = copy_file_to(self.path, config.tools_dir, overwrite=config.is_update)
        return ToolRecord.with_paths([backup], kind=self.kind)

    def uninstall(self, config: "InstallConfiguration") -> None:
        self.plugin_type.uninstall_plugin(self.path)
        remove_path(self.path)


@dataclass
class CargoTool:
    """Installed with `cargo install` under the toolkit's own CARGO_HOME."""

    name: str
    # Replaces `[name]` as the arguments after `install`/`uninstall`
    args: Optional[List[str]] = None
    kind = "cargo"

    def _run(self, op: str, config: "InstallConfiguration") -> None:
        cargo = config.cargo_bin / exe("cargo")
        argv = [str(cargo), op] + (self.args if self.args is not None else [self.name])
        run_cmd(argv, env={CARGO_HOME: str(config.cargo_home)})

    def install(self, config: "InstallConfiguration") -> ToolRecord:
        if not config.cargo_is_installed:
            raise InstallError(
                f"install {self.name}",
                "trying to install using cargo, but cargo is not installed",
            )
        self._run("install", config)
        return ToolRecord.cargo_tool()

    def uninstall(self, config: "InstallConfiguration") -> None:
        self._run("uninstall", config)


Tool = Union[Executables, DirWithBin, Custom, Plugin, CargoTool]


def classify(name: str, path: Path) -> Tool:
    """Work out how a local tool package is installed.

    In order: a custom instruction for `name`, a single executable, a plugin
    file, a directory with `bin/`, a directory holding only executables.
    """

    path = Path(path)
    if not path.exists():
        raise ClassifyError(f"the path for '{name}' specified as '{path}' does not exist")

    if custom_instructions.is_supported(name):
        return Custom(name, path)

    if is_executable(path):
        return Executables(name, [path])

    if path.is_file():
        ext = path.suffix.lstrip(".")
        if not ext:
            raise ClassifyError(f"unable to process tool '{name}': unknown file '{path.name}'")
        try:
            return Plugin(name, PluginType.from_extension(ext), path)
        except ClassifyError as e:
            raise ClassifyError(f"unable to process tool '{name}': unknown file format '{ext}'") from e

    entries = walk_dir(path)
    if any(e.name == "bin" and e.is_dir() for e in entries):
        return DirWithBin(name, path)
    if entries and not any(e.is_dir() for e in entries):
        return Executables(name, [e for e in entries if is_executable(e)])

    raise ClassifyError(f"unable to process tool '{name}' as it is not supported")


def cargo_tool(name: str, extra_args: Optional[List[str]] = None) -> CargoTool:
    return CargoTool(name, extra_args)


def from_record(name: str, record: ToolRecord) -> Optional[Tool]:
    """Rebuild the tool shape from its installation record, for uninstalling."""

    if record.use_cargo or record.kind == CargoTool.kind:
        return CargoTool(name)
    paths = list(record.paths)
    if record.kind == Custom.kind:
        return Custom(name, paths[0] if paths else None)
    if not paths:
        return None
    if record.kind == DirWithBin.kind:
        return DirWithBin(name, paths[0])
    if record.kind == Plugin.kind:
        return Plugin(name, PluginType.VSIX, paths[0])
    if record.kind == Executables.kind:
        return Executables(name, paths)
    # Records written without a kind: classify what is on disk.
    existing = [p for p in paths if p.exists()]
    if not existing:
        return None
    if len(existing) == 1:
        return classify(name, existing[0])
    return Executables(name, existing)
