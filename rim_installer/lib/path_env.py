from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Protocol

from .env import IS_WINDOWS

logger = logging.getLogger(__name__)

_EXPORT_TEMPLATE = 'export PATH="{path}:$PATH"'


class PathEditor(Protocol):
    """Persistent edits to the user's PATH."""

    def add(self, path: Path) -> None:
        ...

    def remove(self, path: Path) -> None:
        ...

    def entries(self) -> List[Path]:
        ...


def _sync_process_path(path: Path, add: bool) -> None:
    # Child processes started by this process (cargo, rustup, ...) must see the change too.
    entry = str(path)
    current = [p for p in os.environ.get("PATH", "").split(os.pathsep) if p]
    if add and entry not in current:
        current.insert(0, entry)
    elif not add:
        current = [p for p in current if p != entry]
    os.environ["PATH"] = os.pathsep.join(current)


class EnvScriptPath:
    """PATH entries kept as `export PATH=...` lines in a sourceable shell script."""

    def __init__(self, script: Path) -> None:
        self.script = Path(script)

    def _lines(self) -> List[str]:
        if not self.script.is_file():
            return []
        return self.script.read_text(encoding="utf-8").splitlines()

    def _write(self, lines: List[str]) -> None:
        self.script.parent.mkdir(parents=True, exist_ok=True)
        self.script.write_text("\n".join(lines) + "\n", encoding="utf-8")

    def entries(self) -> List[Path]:
        prefix, suffix = _EXPORT_TEMPLATE.split("{path}")
        return [
            Path(line[len(prefix) : -len(suffix)])
            for line in self._lines()
            if line.startswith(prefix) and line.endswith(suffix)
        ]

    def add(self, path: Path) -> None:
        line = _EXPORT_TEMPLATE.format(path=path)
        lines = self._lines()
        if line not in lines:
            lines.append(line)
            self._write(lines)
            logger.info("Added %s to PATH (%s)", path, self.script)
        _sync_process_path(path, add=True)

    def remove(self, path: Path) -> None:
        line = _EXPORT_TEMPLATE.format(path=path)
        lines = self._lines()
        if line in lines:
            self._write([ln for ln in lines if ln != line])
            logger.info("Removed %s from PATH (%s)", path, self.script)
        _sync_process_path(path, add=False)


class WindowsUserPath:
    """PATH entries in the per-user `Path` registry value."""

    KEY = "Environment"
    VALUE = "Path"

    def _read(self) -> List[str]:
        import winreg

        with winreg.OpenKey(winreg.HKEY_CURRENT_USER, self.KEY) as key:
            try:
                raw, _ = winreg.QueryValueEx(key, self.VALUE)
            except FileNotFoundError:
                raw = ""
        return [p for p in str(raw).split(";") if p]

    def _write(self, entries: List[str]) -> None:
        import winreg

        with winreg.OpenKey(winreg.HKEY_CURRENT_USER, self.KEY, 0, winreg.KEY_SET_VALUE) as key:
            winreg.SetValueEx(key, self.VALUE, 0, winreg.REG_EXPAND_SZ, ";".join(entries))

    def entries(self) -> List[Path]:
        return [Path(p) for p in self._read()]

    def add(self, path: Path) -> None:
        entries = self._read()
        if str(path) not in entries:
            self._write([str(path)] + entries)
            logger.info("Added %s to user PATH", path)
        _sync_process_path(path, add=True)

    def remove(self, path: Path) -> None:
        entries = self._read()
        if str(path) in entries:
            self._write([p for p in entries if p != str(path)])
            logger.info("Removed %s from user PATH", path)
        _sync_process_path(path, add=False)


class NoopPath:
    """Used with `no_modify_path`: only the running process sees the change."""

    def entries(self) -> List[Path]:
        return []

    def add(self, path: Path) -> None:
        _sync_process_path(path, add=True)

    def remove(self, path: Path) -> None:
        _sync_process_path(path, add=False)


def default_path_editor(env_script: Path, *, no_modify_path: bool = False) -> PathEditor:
    if no_modify_path:
        return NoopPath()
    if IS_WINDOWS:
        return WindowsUserPath()
    return EnvScriptPath(env_script)


SHELL_PROFILES = (".profile", ".bashrc", ".zshenv")


def _source_line(env_script: Path) -> str:
    return f'. "{env_script}"'


def add_to_shell_profiles(env_script: Path, home: Path) -> List[Path]:
    """Source `env_script` from the user's shell profiles.

    `.profile` is always written, the others only when they already exist.
    """

    line = _source_line(env_script)
    touched: List[Path] = []
    for name in SHELL_PROFILES:
        rc = home / name
        if name != ".profile" and not rc.is_file():
            continue
        existing = rc.read_text(encoding="utf-8").splitlines() if rc.is_file() else []
        if line in existing:
            continue
        with rc.open("a", encoding="utf-8") as f:
            f.write(f"\n{line}\n")
        touched.append(rc)
        logger.info("Configured %s to load %s", rc, env_script)
    return touched


def remove_from_shell_profiles(env_script: Path, home: Path) -> None:
    line = _source_line(env_script)
    for name in SHELL_PROFILES:
        rc = home / name
        if not rc.is_file():
            continue
        lines = rc.read_text(encoding="utf-8").splitlines()
        if line in lines:
            rc.write_text("\n".join(ln for ln in lines if ln != line) + "\n", encoding="utf-8")
            logger.info("Removed %s from %s", env_script, rc)
