from __future__ import annotations

import os
import platform
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Environment variables understood by rustup/cargo and by this program.
CARGO_HOME = "CARGO_HOME"
RUSTUP_HOME = "RUSTUP_HOME"
RUSTUP_DIST_SERVER = "RUSTUP_DIST_SERVER"
RUSTUP_UPDATE_ROOT = "RUSTUP_UPDATE_ROOT"
RIM_DIST_SERVER = "RIM_DIST_SERVER"
RIM_TARGET = "RIM_TARGET"
MODE = "MODE"

IS_WINDOWS = os.name == "nt"
EXE_SUFFIX = ".exe" if IS_WINDOWS else ""


@dataclass(frozen=True)
class Defaults:
    rim_dist_server: str = "https://rust-mirror.obs.cn-north-4.myhuaweicloud.com"
    rustup_dist_server: str = "https://static.rust-lang.org"
    rustup_update_root: str = "https://static.rust-lang.org/rustup"
    install_dirname: str = "rim"
    user_data_dirname: str = ".rim"


DEFAULTS = Defaults()


def exe(name: str) -> str:
    return f"{name}{EXE_SUFFIX}"


def rim_dist_server() -> str:
    return os.environ.get(RIM_DIST_SERVER) or DEFAULTS.rim_dist_server


def home_dir() -> Path:
    return Path.home()


def default_install_dir() -> Path:
    return home_dir() / DEFAULTS.install_dirname


def user_data_dir() -> Path:
    return home_dir() / DEFAULTS.user_data_dirname


def current_exe() -> Path:
    """Path of the running program (the frozen binary when packaged)."""

    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve()
    return Path(sys.argv[0] or sys.executable).resolve()


_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "armv7l": "armv7",
    "riscv64": "riscv64gc",
    "loongarch64": "loongarch64",
}


def current_target(override: Optional[str] = None) -> str:
    """Best-effort target triple of the running machine.

    `RIM_TARGET` takes precedence so that the same code can act for another target.
    """

    if override:
        return override
    env_target = os.environ.get(RIM_TARGET)
    if env_target:
        return env_target

    machine = platform.machine().lower()
    arch = _ARCH_ALIASES.get(machine, machine or "x86_64")
    system = platform.system().lower()

    if system == "windows":
        # The gnu flavour is only picked when explicitly requested via RIM_TARGET.
        return f"{arch}-pc-windows-msvc"
    if system == "darwin":
        return f"{arch}-apple-darwin"
    if system == "linux":
        libc, _ = platform.libc_ver()
        env_part = "gnu" if libc == "glibc" or not libc else "musl"
        if arch == "armv7":
            env_part += "eabihf"
        return f"{arch}-unknown-linux-{env_part}"
    return f"{arch}-unknown-{system}"
