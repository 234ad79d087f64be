"""Installation record (`.fingerprint`) kept at the install root.

The record is the only authority on whether a toolkit is installed and on
what was installed. It is rewritten after every successful step so that it
always matches what actually happened, even after a crash.

    root = "/home/me/rim"
    name = "Rust Toolkit"
    version = "1.0.0"

    [rust]
    version = "1.82.0"
    components = ["clippy", "rustfmt"]

    [tools.vscode]
    kind = "custom"
    paths = ["/home/me/rim/tools/vscode"]

    [tools.cargo-nextest]
    kind = "cargo"
    use-cargo = true
    version = "0.9.72"
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli_w

from .errors import InstallationRecordError
from .lib.env import current_exe
from .lib.fs import is_root_dir, to_normalized_abspath

logger = logging.getLogger(__name__)


@dataclass
class ToolRecord:
    # True when the package manager owns the files (paths are not tracked)
    use_cargo: bool = False
    paths: List[Path] = field(default_factory=list)
    version: Optional[str] = None
    # Shape the tool was installed as, see `tools.Tool.kind`
    kind: Optional[str] = None

    @classmethod
    def cargo_tool(cls) -> "ToolRecord":
        return cls(use_cargo=True, kind="cargo")

    @classmethod
    def with_paths(cls, paths: List[Path], kind: Optional[str] = None) -> "ToolRecord":
        return cls(paths=[Path(p) for p in paths], kind=kind)

    @classmethod
    def from_dict(cls, name: str, data: Any) -> "ToolRecord":
        if not isinstance(data, dict):
            raise InstallationRecordError(f"record of tool '{name}' must be a table")
        paths = data.get("paths", [])
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise InstallationRecordError(f"'paths' of tool '{name}' must be a list of paths")
        return cls(
            use_cargo=bool(data.get("use-cargo", False)),
            paths=[Path(p) for p in paths],
            version=data.get("version"),
            kind=data.get("kind"),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.kind:
            out["kind"] = self.kind
        if self.use_cargo:
            out["use-cargo"] = True
        if self.paths:
            out["paths"] = [str(p) for p in self.paths]
        if self.version:
            out["version"] = self.version
        return out


@dataclass
class RustRecord:
    version: str
    components: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "RustRecord":
        if not isinstance(data, dict):
            raise InstallationRecordError("record of the rust toolchain must be a table")
        version = data.get("version")
        if not isinstance(version, str):
            raise InstallationRecordError("record of the rust toolchain has no 'version'")
        components = data.get("components", [])
        if not isinstance(components, list) or not all(isinstance(c, str) for c in components):
            raise InstallationRecordError("'rust.components' must be a list of names")
        return cls(version, list(components))


@dataclass
class InstallationRecord:
    root: Path
    name: Optional[str] = None
    version: Optional[str] = None
    rust: Optional[RustRecord] = None
    tools: Dict[str, ToolRecord] = field(default_factory=dict)

    FILENAME = ".fingerprint"

    @property
    def path(self) -> Path:
        return Path(self.root) / self.FILENAME

    @classmethod
    def exists(cls, root: Path) -> bool:
        return (Path(root) / cls.FILENAME).is_file()

    @classmethod
    def from_str(cls, text: str) -> "InstallationRecord":
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as e:
            raise InstallationRecordError(f"malformed installation record: {e}") from e
        if not isinstance(data.get("root"), str):
            raise InstallationRecordError("installation record has no 'root'")
        rust = data.get("rust")
        tools = data.get("tools", {})
        if not isinstance(tools, dict):
            raise InstallationRecordError("'tools' of the installation record must be a table")
        return cls(
            root=Path(data["root"]),
            name=data.get("name"),
            version=data.get("version"),
            rust=RustRecord.from_dict(rust) if rust is not None else None,
            tools={n: ToolRecord.from_dict(n, t) for n, t in tools.items()},
        )

    @classmethod
    def load_from_dir(cls, root: Path) -> "InstallationRecord":
        """Load the record in `root`, checking that it describes `root` itself."""

        root = Path(root)
        path = root / cls.FILENAME
        if not path.is_file():
            raise InstallationRecordError(f"installation record cannot be found in '{root}'")
        record = cls.from_str(path.read_text(encoding="utf-8"))
        if to_normalized_abspath(record.root) != to_normalized_abspath(root):
            raise InstallationRecordError(
                f"'{path}' records installation root '{record.root}', which does not match the "
                "directory it lives in"
            )
        return record

    @classmethod
    def load_or_new(cls, root: Path) -> "InstallationRecord":
        if cls.exists(root):
            return cls.load_from_dir(root)
        return cls(root=Path(root))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"root": str(self.root)}
        if self.name is not None:
            data["name"] = self.name
        if self.version is not None:
            data["version"] = self.version
        if self.rust is not None:
            data["rust"] = {"version": self.rust.version, "components": list(self.rust.components)}
        if self.tools:
            data["tools"] = {name: rec.to_dict() for name, rec in self.tools.items()}
        return data

    def write(self) -> None:
        # Write-then-rename so a crash never leaves a half written record.
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.FILENAME + ".tmp")
        tmp.write_text(tomli_w.dumps(self.to_dict()), encoding="utf-8")
        tmp.replace(self.path)

    # -- mutations, each persisted immediately --------------------------------

    def set_toolkit_meta(self, name: Optional[str], version: Optional[str]) -> None:
        self.name = name
        self.version = version
        self.write()

    def add_rust_record(self, version: str, components: List[str]) -> None:
        self.rust = RustRecord(version, list(components))
        self.write()

    def remove_rust_record(self) -> None:
        self.rust = None
        self.write()

    def record_tool(self, name: str, record: ToolRecord) -> None:
        self.tools[name] = record
        self.write()
        logger.debug("Recorded tool %s", name)

    def remove_tool_record(self, name: str) -> None:
        if self.tools.pop(name, None) is not None:
            self.write()

    def installed_tools(self) -> List[str]:
        return list(self.tools)

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)


def get_installed_dir(exe_path: Optional[Path] = None) -> Path:
    """Install root of the running manager.

    The manager lives directly in its install root, but a stray copy elsewhere
    must never be mistaken for an installation (it could make uninstall wipe
    an unrelated directory), so:
    1. the directory must not be a filesystem root;
    2. it must hold a `.fingerprint`;
    3. the `root` recorded in that file must be the directory itself.
    """

    exe = Path(exe_path) if exe_path is not None else current_exe()
    candidate = to_normalized_abspath(exe).parent
    if is_root_dir(candidate):
        raise InstallationRecordError(
            "it appears that this program was mistakenly installed in a root directory"
        )
    if not InstallationRecord.exists(candidate):
        raise InstallationRecordError("installation record cannot be found")
    # raises on root mismatch
    InstallationRecord.load_from_dir(candidate)
    return candidate
