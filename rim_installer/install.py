"""Install engine.

A batch install runs as a pipeline of steps: environment setup, the Rust
toolchain, then one step per tool, then a final step that stores the
manifest next to the installation record. The toolchain always goes first
because cargo-installed tools need it.

The batch is not transactional: when tool N fails, tools 1..N-1 stay
installed and recorded, and the error of tool N is raised.
"""

from __future__ import annotations

import logging
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import httpx
import tomli_w

from .components import Component, ComponentType
from .errors import InstallError, RimError
from .fingerprint import InstallationRecord, ToolRecord
from .lib.command import run_cmd
from .lib.download import DownloadOpt, ProgressCallback
from .lib.env import (
    CARGO_HOME,
    DEFAULTS,
    IS_WINDOWS,
    RUSTUP_DIST_SERVER,
    RUSTUP_HOME,
    RUSTUP_UPDATE_ROOT,
    current_exe,
    current_target,
    exe,
    home_dir,
)
from .lib.fs import (
    archive_suffix,
    copy_to,
    ensure_dir,
    extract_archive,
    make_temp_dir,
    to_normalized_abspath,
)
from .lib.path_env import PathEditor, add_to_shell_profiles, default_path_editor
from .pipeline import PipelineResult, StepCallback, run_pipeline
from .rustup import ToolchainInstaller
from .settings import InstallSettings
from .tools import cargo_tool, classify
from .toolset_manifest import (
    DetailedVersion,
    GitInfo,
    PathInfo,
    PlainVersion,
    ToolInfo,
    ToolsetManifest,
    UrlInfo,
)

logger = logging.getLogger(__name__)

MANAGER_NAME = exe("rim-manager")


@dataclass
class InstallConfiguration:
    install_dir: Path
    rustup_dist_server: str = DEFAULTS.rustup_dist_server
    rustup_update_root: str = DEFAULTS.rustup_update_root
    # (registry name, index url) replacing crates.io in cargo's config
    cargo_registry: Optional[Tuple[str, str]] = None
    insecure: bool = False
    no_modify_path: bool = False
    # Update mode lets installs replace files that are already there.
    is_update: bool = False
    target: Optional[str] = None
    cargo_is_installed: bool = False
    path_editor: Optional[PathEditor] = None
    toolchain_installer: Optional[ToolchainInstaller] = None
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, repr=False)
    progress: Optional[ProgressCallback] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.install_dir = to_normalized_abspath(self.install_dir)
        if self.path_editor is None:
            self.path_editor = default_path_editor(self.env_script, no_modify_path=self.no_modify_path)
        if self.toolchain_installer is None:
            self.toolchain_installer = ToolchainInstaller()
        if not self.cargo_is_installed:
            self.cargo_is_installed = (self.cargo_bin / exe("cargo")).is_file()

    @classmethod
    def from_settings(cls, settings: InstallSettings, **kwargs: object) -> "InstallConfiguration":
        return cls(
            install_dir=settings.install_dir,
            rustup_dist_server=settings.rustup_dist_server,
            rustup_update_root=settings.rustup_update_root,
            cargo_registry=settings.cargo_registry,
            insecure=settings.insecure,
            no_modify_path=settings.no_modify_path,
            **kwargs,  # type: ignore[arg-type]
        )

    # -- directories --------------------------------------------------------------

    @property
    def cargo_home(self) -> Path:
        return self.install_dir / "cargo"

    @property
    def rustup_home(self) -> Path:
        return self.install_dir / "rustup"

    @property
    def cargo_bin(self) -> Path:
        return self.cargo_home / "bin"

    @property
    def tools_dir(self) -> Path:
        return self.install_dir / "tools"

    @property
    def temp_dir(self) -> Path:
        return self.install_dir / "temp"

    @property
    def env_script(self) -> Path:
        return self.cargo_home / "env"

    @property
    def target_triple(self) -> str:
        return current_target(self.target)

    def create_temp_dir(self, prefix: str):
        return make_temp_dir(prefix, self.temp_dir)

    def env_vars(self) -> Dict[str, str]:
        return {
            CARGO_HOME: str(self.cargo_home),
            RUSTUP_HOME: str(self.rustup_home),
            RUSTUP_DIST_SERVER: self.rustup_dist_server,
            RUSTUP_UPDATE_ROOT: self.rustup_update_root,
        }

    def download_opt(self, name: str) -> DownloadOpt:
        return DownloadOpt(name, insecure=self.insecure, transport=self.transport, progress=self.progress)

    # -- environment setup ----------------------------------------------------------

    def setup(self) -> None:
        """Create the directory layout and the environment configuration."""

        for d in (self.install_dir, self.cargo_home, self.cargo_bin, self.rustup_home, self.tools_dir, self.temp_dir):
            ensure_dir(d)
        self.write_env_config()
        self.write_cargo_config()
        self.copy_manager()

    def write_env_config(self) -> None:
        env = self.env_vars()
        if IS_WINDOWS:
            if not self.no_modify_path:
                for key, value in env.items():
                    run_cmd(["setx", key, value])
        else:
            # keep PATH lines, they belong to the PATH editor
            kept: List[str] = []
            if self.env_script.is_file():
                kept = [ln for ln in self.env_script.read_text(encoding="utf-8").splitlines() if ln.startswith("export PATH=")]
            lines = ["#!/bin/sh", "# rim shell setup"]
            lines += [f'export {key}="{value}"' for key, value in env.items()]
            self.env_script.write_text("\n".join(lines + kept) + "\n", encoding="utf-8")
            if not self.no_modify_path:
                add_to_shell_profiles(self.env_script, home_dir())
        assert self.path_editor is not None
        self.path_editor.add(self.cargo_bin)

    def write_cargo_config(self) -> None:
        if self.cargo_registry is None:
            return
        name, url = self.cargo_registry
        config = {
            "source": {
                "crates-io": {"replace-with": name},
                name: {"registry": url},
            }
        }
        (self.cargo_home / "config.toml").write_text(tomli_w.dumps(config), encoding="utf-8")
        logger.info("Configured cargo to use registry %s (%s)", name, url)

    def copy_manager(self) -> None:
        """Put a copy of this program into the install dir, it becomes the manager."""

        if not getattr(sys, "frozen", False):
            logger.debug("Not a packaged executable, skipping manager copy")
            return
        dest = self.install_dir / MANAGER_NAME
        src = current_exe()
        if src == dest:
            return
        shutil.copy2(src, dest)
        logger.info("Manager installed as %s", dest)

    # -- tools ----------------------------------------------------------------------

    def install_tool(self, name: str, info: ToolInfo, record: InstallationRecord) -> ToolRecord:
        """Install one tool and record it right away."""

        logger.info("Installing tool %s", name)
        try:
            tool_record = self._install_tool(name, info)
        except (RimError, OSError, ValueError, KeyError) as e:
            raise InstallError(f"install tool '{name}'", str(e)) from e
        tool_record.version = info.version
        record.record_tool(name, tool_record)
        return tool_record

    def _install_tool(self, name: str, info: ToolInfo) -> ToolRecord:
        if info.is_cargo_tool():
            return cargo_tool(name, cargo_install_args(name, info)).install(self)

        with self.create_temp_dir(f"tool-{name}") as tmp:
            tmp_dir = Path(tmp)
            if isinstance(info, PathInfo):
                src = info.path
                if src.is_dir():
                    # installing may move the directory, never move the package source
                    src = copy_to(src, tmp_dir)
            elif isinstance(info, UrlInfo):
                src = tmp_dir / info.resolved_filename()
                self.download_opt(name).blocking_download(info.url, src)
            else:
                raise InstallError(f"install tool '{name}'", f"unsupported tool source {info!r}")

            if src.is_file() and archive_suffix(src) is not None:
                src = extract_archive(src, tmp_dir / "extracted")
            return classify(name, src).install(self)


def cargo_install_args(name: str, info: ToolInfo) -> Optional[List[str]]:
    """Arguments after `cargo install` for a package-manager tool."""

    if isinstance(info, (PlainVersion, DetailedVersion)):
        return [name, "--version", info.ver] if info.ver else [name]
    if isinstance(info, GitInfo):
        args = ["--git", info.git]
        for flag, value in (("--branch", info.branch), ("--tag", info.tag), ("--rev", info.rev)):
            if value:
                args += [flag, value]
        return args + [name]
    return None


# ---------------------------------------------------------------------------
# Pipeline steps


@dataclass
class SetupStep:
    config: InstallConfiguration
    step_id: str = "setup"

    def is_done(self) -> bool:
        return False

    def run(self) -> None:
        self.config.setup()


@dataclass
class ToolchainStep:
    config: InstallConfiguration
    manifest: ToolsetManifest
    record: InstallationRecord
    optional_components: List[str]
    step_id: str = "toolchain"

    def _wanted(self) -> List[str]:
        return list(dict.fromkeys(list(self.manifest.rust.components) + self.optional_components))

    def is_done(self) -> bool:
        rust = self.record.rust
        return (
            rust is not None
            and rust.version == self.manifest.rust_version()
            and set(self._wanted()) <= set(rust.components)
            and self.config.cargo_is_installed
        )

    def run(self) -> None:
        installer = self.config.toolchain_installer
        assert installer is not None
        try:
            if self.config.is_update and self.record.rust is not None:
                installer.update(self.config, self.manifest)
                components = self._wanted()
            else:
                components = installer.install(self.config, self.manifest, self.optional_components)
        except (RimError, OSError) as e:
            raise InstallError("install rust toolchain", str(e)) from e
        self.config.cargo_is_installed = True
        self.record.add_rust_record(self.manifest.rust_version(), components)


@dataclass
class ToolStep:
    config: InstallConfiguration
    record: InstallationRecord
    name: str
    info: ToolInfo

    @property
    def step_id(self) -> str:
        return f"tool:{self.name}"

    def is_done(self) -> bool:
        existing = self.record.tools.get(self.name)
        if existing is None:
            return False
        if self.info.version is None:
            # nothing to compare against, reinstall only when updating
            return not self.config.is_update
        return existing.version == self.info.version

    def run(self) -> None:
        self.config.install_tool(self.name, self.info, self.record)


@dataclass
class FinalizeStep:
    config: InstallConfiguration
    manifest: ToolsetManifest
    record: InstallationRecord
    step_id: str = "finalize"

    def is_done(self) -> bool:
        return False

    def run(self) -> None:
        self.manifest.write_to_dir(self.config.install_dir)
        self.record.set_toolkit_meta(self.manifest.name, self.manifest.version)


def build_steps(
    config: InstallConfiguration,
    manifest: ToolsetManifest,
    components: Sequence[Component],
    record: InstallationRecord,
) -> list:
    optional = [c.name for c in components if c.kind == ComponentType.TOOLCHAIN_COMPONENT]
    steps: list = [SetupStep(config), ToolchainStep(config, manifest, record, optional)]
    for comp in components:
        if comp.kind != ComponentType.TOOL:
            continue
        if comp.tool_installer is None:
            raise InstallError(f"install tool '{comp.name}'", "component carries no tool source")
        steps.append(ToolStep(config, record, comp.name, comp.tool_installer))
    steps.append(FinalizeStep(config, manifest, record))
    return steps


def install_components(
    config: InstallConfiguration,
    manifest: ToolsetManifest,
    components: Sequence[Component],
    *,
    on_step: Optional[StepCallback] = None,
) -> PipelineResult:
    """Install the toolchain and the selected tool components."""

    record = InstallationRecord.load_or_new(config.install_dir)
    steps = build_steps(config, manifest, components, record)
    result = run_pipeline(steps=steps, on_step=on_step)
    logger.info(
        "Installation of %s finished (%d steps ran, %d skipped)",
        manifest.name or "toolkit",
        len(result.ran_steps),
        len(result.skipped_steps),
    )
    return result


def select_components(
    manifest: ToolsetManifest,
    wanted: Sequence[str] = (),
    *,
    target: Optional[str] = None,
) -> List[Component]:
    """Components to install.

    Required components are always in. With no `wanted` names, the default pick
    adds every optional toolchain component and every non-optional tool not
    already on the machine; otherwise exactly the `wanted` names are added.
    """

    all_components = manifest.current_target_components(True, target)
    selected = []
    for comp in all_components:
        if comp.required or comp.name in wanted:
            selected.append(comp)
        elif not wanted and not comp.installed:
            if comp.kind == ComponentType.TOOLCHAIN_COMPONENT or not comp.optional:
                selected.append(comp)
    unknown = set(wanted) - {c.name for c in all_components}
    if unknown:
        raise InstallError("select components", f"unknown component(s): {', '.join(sorted(unknown))}")
    return selected


def components_for_update(
    manifest: ToolsetManifest, record: InstallationRecord, *, target: Optional[str] = None
) -> List[Component]:
    """Components a toolkit update touches: installed tools still listed, plus required ones."""

    recorded_components = set(record.rust.components) if record.rust else set()
    return [
        comp
        for comp in manifest.current_target_components(False, target)
        if comp.required
        or comp.name in record.tools
        or (comp.kind == ComponentType.TOOLCHAIN_COMPONENT and comp.name in recorded_components)
    ]


def update_toolkit(
    config: InstallConfiguration,
    manifest: ToolsetManifest,
    *,
    on_step: Optional[StepCallback] = None,
) -> PipelineResult:
    """Move an existing installation to `manifest`, replacing files in place."""

    config.is_update = True
    record = InstallationRecord.load_from_dir(config.install_dir)
    components = components_for_update(manifest, record, target=config.target)
    steps = build_steps(config, manifest, components, record)
    return run_pipeline(steps=steps, on_step=on_step)
