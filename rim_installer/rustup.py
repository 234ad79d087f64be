from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Sequence

from .errors import InstallError
from .lib.command import run_cmd
from .lib.download import url_join
from .lib.env import RUSTUP_DIST_SERVER, exe
from .lib.fs import set_exec_permission

if TYPE_CHECKING:
    from .install import InstallConfiguration
    from .toolset_manifest import ToolsetManifest

logger = logging.getLogger(__name__)

RUSTUP_INIT = exe("rustup-init")
RUSTUP = exe("rustup")


class ToolchainInstaller:
    """Installs/updates/removes the Rust toolchain through rustup."""

    def __init__(self, *, verbose: bool = False, quiet: bool = False) -> None:
        # An inherited override would make rustup ignore the default we set.
        os.environ.pop("RUSTUP_TOOLCHAIN", None)
        self.verbose = verbose
        self.quiet = quiet

    def install(
        self,
        config: "InstallConfiguration",
        manifest: "ToolsetManifest",
        optional_components: Sequence[str] = (),
    ) -> List[str]:
        """Install the manifest's toolchain, returns the installed component names."""

        rustup = self.ensure_rustup(config, manifest)
        components = list(manifest.rust.components) + [
            c for c in optional_components if c not in manifest.rust.components
        ]
        version = manifest.rust_version()

        args: List[str] = ["toolchain", "install", version, "--no-self-update"]
        if manifest.rust.profile is not None:
            args += ["--profile", manifest.rust.profile.name]
        if components:
            args.append("--component")
            args += components

        env = config.env_vars()
        local_server = manifest.offline_dist_server()
        if local_server is not None:
            env[RUSTUP_DIST_SERVER] = local_server
        run_cmd([str(rustup)] + args, env=env)
        run_cmd([str(rustup), "default", version], env=env)
        return components

    def update(self, config: "InstallConfiguration", manifest: "ToolsetManifest") -> None:
        rustup = self.ensure_rustup(config, manifest)
        version = manifest.rust_version()
        env = config.env_vars()
        run_cmd([str(rustup), "toolchain", "add", version], env=env)
        run_cmd([str(rustup), "default", version], env=env)

    def remove_self(self, config: "InstallConfiguration") -> None:
        """`rustup self uninstall`, which removes every toolchain as well."""

        rustup = config.cargo_bin / RUSTUP
        if not rustup.is_file():
            logger.info("rustup is not installed in %s, nothing to remove", config.cargo_bin)
            return
        run_cmd([str(rustup), "self", "uninstall", "-y"], env=config.env_vars())

    def ensure_rustup(self, config: "InstallConfiguration", manifest: "ToolsetManifest") -> Path:
        rustup = config.cargo_bin / RUSTUP
        if rustup.exists():
            return rustup

        # A cached manifest may claim a bundled rustup-init that is no longer there.
        bundled = manifest.rustup_bin(config.target)
        if bundled is not None and bundled.is_file():
            self._run_rustup_init(config, bundled)
            return rustup

        with config.create_temp_dir("rustup-init") as tmp:
            rustup_init = Path(tmp) / RUSTUP_INIT
            self.download_rustup_init(config, rustup_init, manifest)
            self._run_rustup_init(config, rustup_init)
        return rustup

    def download_rustup_init(
        self, config: "InstallConfiguration", dest: Path, manifest: Optional["ToolsetManifest"] = None
    ) -> None:
        url = url_join(config.rustup_update_root, f"dist/{config.target_triple}/{RUSTUP_INIT}")
        logger.info("Downloading rustup-init from %s", url)
        opt = config.download_opt("rustup-init")
        if manifest is not None and manifest.proxy is not None:
            opt.proxy = manifest.proxy
        opt.blocking_download(url, dest)

    def _run_rustup_init(self, config: "InstallConfiguration", rustup_init: Path) -> None:
        set_exec_permission(rustup_init)
        # --no-modify-path: the env script written by setup() already covers it
        args = [
            str(rustup_init),
            "--no-modify-path",
            "--default-toolchain",
            "none",
            "--default-host",
            config.target_triple,
            "-y",
        ]
        if self.verbose:
            args.append("-v")
        elif self.quiet:
            args.append("-q")
        run_cmd(args, env=config.env_vars())
        if not (config.cargo_bin / RUSTUP).exists():
            raise InstallError("install rustup", f"rustup-init did not produce '{config.cargo_bin / RUSTUP}'")
