"""Toolset manifest: the TOML document describing a toolkit.

A toolkit is one Rust toolchain (version, profile, components) plus a set of
extra tools per target triple. The manifest is either baked into this package,
shipped next to the installer, or downloaded from a distribution server.

Example:

    name = "Rust Toolkit"
    version = "1.0.0"

    [rust]
    version = "1.82.0"
    profile = { name = "minimal", verbose-name = "Basic" }
    components = ["clippy", "rustfmt"]
    optional-components = ["rust-docs"]

    [tools.target.x86_64-unknown-linux-gnu]
    cargo-nextest = "0.9.72"
    "VS Code" = { path = "tools/vscode", identifier = "vscode", required = true }
"""

from __future__ import annotations

import copy
import logging
import threading
import tomllib
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import httpx
import tomli_w

from . import custom_instructions
from .components import Component, ComponentType, number_components
from .errors import ManifestError
from .lib.download import DownloadOpt
from .lib.env import current_exe, current_target
from .lib.fs import ensure_dir, make_temp_dir, read_to_string, to_normalized_abspath

logger = logging.getLogger(__name__)

DEFAULT_TOOLCHAIN_GROUP = "Rust Toolchain"
DEFAULT_PROFILE = "default"


def _opt_str(data: Dict[str, Any], key: str, ctx: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ManifestError(f"{ctx}: '{key}' must be a string, got {type(value).__name__}")
    return value


def _flag(data: Dict[str, Any], key: str, ctx: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise ManifestError(f"{ctx}: '{key}' must be a boolean")
    return value


def _str_list(data: Dict[str, Any], key: str, ctx: str) -> List[str]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ManifestError(f"{ctx}: '{key}' must be a list of strings")
    return list(value)


def _drop_empty(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None and v is not False and v != {} and v != []}


# ---------------------------------------------------------------------------
# Tool sources


class ToolInfo:
    """Where and how a tool is obtained.

    Closed set of variants: PlainVersion, DetailedVersion, GitInfo, PathInfo, UrlInfo.
    """

    required: bool = False
    optional: bool = False
    identifier: Optional[str] = None
    version: Optional[str] = None

    def is_required(self) -> bool:
        return self.required

    def is_optional(self) -> bool:
        return self.optional

    def is_cargo_tool(self) -> bool:
        return isinstance(self, (PlainVersion, DetailedVersion, GitInfo))

    def to_toml_value(self) -> Any:
        raise NotImplementedError

    @staticmethod
    def parse(name: str, value: Any) -> "ToolInfo":
        ctx = f"tool '{name}'"
        if isinstance(value, str):
            return PlainVersion(value)
        if not isinstance(value, dict):
            raise ManifestError(f"{ctx}: expected a version string or a table")

        common = {
            "required": _flag(value, "required", ctx),
            "optional": _flag(value, "optional", ctx),
            "identifier": _opt_str(value, "identifier", ctx),
        }
        # Same precedence as an untagged union: the first shape that fits wins.
        if "ver" in value:
            ver = _opt_str(value, "ver", ctx)
            return DetailedVersion(ver=ver or "", **common)
        if "git" in value:
            return GitInfo(
                git=_opt_str(value, "git", ctx) or "",
                branch=_opt_str(value, "branch", ctx),
                tag=_opt_str(value, "tag", ctx),
                rev=_opt_str(value, "rev", ctx),
                **common,
            )
        if "path" in value:
            return PathInfo(
                path=Path(_opt_str(value, "path", ctx) or ""),
                version=_opt_str(value, "version", ctx),
                **common,
            )
        if "url" in value:
            url = _opt_str(value, "url", ctx) or ""
            try:
                httpx.URL(url)
            except httpx.InvalidURL as e:
                raise ManifestError(f"{ctx}: invalid url '{url}'") from e
            return UrlInfo(
                url=url,
                version=_opt_str(value, "version", ctx),
                filename=_opt_str(value, "filename", ctx),
                **common,
            )
        raise ManifestError(f"{ctx}: table needs one of 'ver', 'git', 'path' or 'url'")


@dataclass
class PlainVersion(ToolInfo):
    """`name = "1.0"`: installed by the toolchain's package manager."""

    ver: str

    @property
    def version(self) -> Optional[str]:
        return self.ver

    def to_toml_value(self) -> Any:
        return self.ver


@dataclass
class DetailedVersion(ToolInfo):
    ver: str
    required: bool = False
    optional: bool = False
    identifier: Optional[str] = None

    @property
    def version(self) -> Optional[str]:
        return self.ver

    def to_toml_value(self) -> Any:
        return _drop_empty(
            {
                "ver": self.ver,
                "required": self.required,
                "optional": self.optional,
                "identifier": self.identifier,
            }
        )


@dataclass
class GitInfo(ToolInfo):
    git: str
    branch: Optional[str] = None
    tag: Optional[str] = None
    rev: Optional[str] = None
    required: bool = False
    optional: bool = False
    identifier: Optional[str] = None

    @property
    def version(self) -> Optional[str]:
        return self.tag

    def to_toml_value(self) -> Any:
        return _drop_empty(
            {
                "git": self.git,
                "branch": self.branch,
                "tag": self.tag,
                "rev": self.rev,
                "required": self.required,
                "optional": self.optional,
                "identifier": self.identifier,
            }
        )


@dataclass
class PathInfo(ToolInfo):
    path: Path
    version: Optional[str] = None
    required: bool = False
    optional: bool = False
    identifier: Optional[str] = None

    def to_toml_value(self) -> Any:
        return _drop_empty(
            {
                "path": self.path.as_posix(),
                "version": self.version,
                "required": self.required,
                "optional": self.optional,
                "identifier": self.identifier,
            }
        )


@dataclass
class UrlInfo(ToolInfo):
    url: str
    version: Optional[str] = None
    filename: Optional[str] = None
    required: bool = False
    optional: bool = False
    identifier: Optional[str] = None

    def resolved_filename(self) -> str:
        """`filename` when given, else the last segment of the url path."""

        if self.filename:
            return self.filename
        segment = httpx.URL(self.url).path.rstrip("/").rsplit("/", 1)[-1]
        if not segment:
            raise ManifestError(f"unable to determine a file name for '{self.url}'")
        return segment

    def to_toml_value(self) -> Any:
        return _drop_empty(
            {
                "url": self.url,
                "version": self.version,
                "required": self.required,
                "optional": self.optional,
                "identifier": self.identifier,
                "filename": self.filename,
            }
        )


class ToolMap:
    """Ordered `declared key -> ToolInfo` map.

    Iterating (`items()`, `names()`, `for name in map`) yields each tool's
    `identifier` when it has one, else the declared key. `raw_items()` gives
    the declared keys.
    """

    def __init__(self, entries: Optional[Dict[str, ToolInfo]] = None) -> None:
        self._entries: Dict[str, ToolInfo] = dict(entries or {})

    @classmethod
    def parse(cls, target: str, data: Any) -> "ToolMap":
        if not isinstance(data, dict):
            raise ManifestError(f"tools of target '{target}' must be a table")
        return cls({key: ToolInfo.parse(key, value) for key, value in data.items()})

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __contains__(self, name: object) -> bool:
        return name in self.names() or name in self._entries

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ToolMap) and self._entries == other._entries

    def __repr__(self) -> str:
        return f"ToolMap({self._entries!r})"

    def items(self) -> List[Tuple[str, ToolInfo]]:
        return [(info.identifier or key, info) for key, info in self._entries.items()]

    def names(self) -> List[str]:
        return [name for name, _ in self.items()]

    def raw_items(self) -> List[Tuple[str, ToolInfo]]:
        return list(self._entries.items())

    def values(self) -> List[ToolInfo]:
        return list(self._entries.values())

    def get(self, name: str) -> Optional[ToolInfo]:
        """Look up by resolved name first, then by declared key."""

        for resolved, info in self.items():
            if resolved == name:
                return info
        return self._entries.get(name)

    def set(self, key: str, info: ToolInfo) -> None:
        self._entries[key] = info

    def to_toml_value(self) -> Dict[str, Any]:
        return {key: info.to_toml_value() for key, info in self._entries.items()}


# ---------------------------------------------------------------------------
# Toolchain / tools / proxy sections


@dataclass
class ToolchainProfile:
    name: str = DEFAULT_PROFILE
    verbose_name: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def parse(cls, data: Any) -> "ToolchainProfile":
        if isinstance(data, str):
            return cls(name=data)
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ManifestError("rust.profile must be a string or a table with a 'name'")
        return cls(
            name=data["name"],
            verbose_name=_opt_str(data, "verbose-name", "rust.profile"),
            description=_opt_str(data, "description", "rust.profile"),
        )

    def to_toml_value(self) -> Dict[str, Any]:
        return _drop_empty(
            {"name": self.name, "verbose-name": self.verbose_name, "description": self.description}
        )


@dataclass
class RustToolchain:
    version: str
    profile: Optional[ToolchainProfile] = None
    components: List[str] = field(default_factory=list)
    optional_components: List[str] = field(default_factory=list)
    name: Optional[str] = None
    offline_dist_server: Optional[str] = None
    # target triple -> bundled rustup-init, relative to the package root
    rustup: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, data: Any) -> "RustToolchain":
        if not isinstance(data, dict):
            raise ManifestError("missing required table [rust]")
        version = data.get("version")
        if not isinstance(version, str) or not version.strip():
            raise ManifestError("rust.version must be a non-empty string")
        rustup = data.get("rustup", {})
        if not isinstance(rustup, dict) or not all(isinstance(v, str) for v in rustup.values()):
            raise ManifestError("rust.rustup must map target triples to paths")
        profile = data.get("profile")
        return cls(
            version=version,
            profile=ToolchainProfile.parse(profile) if profile is not None else None,
            components=_str_list(data, "components", "rust"),
            optional_components=_str_list(data, "optional-components", "rust"),
            # `group` is accepted as an alias of `name`
            name=_opt_str(data, "name", "rust") or _opt_str(data, "group", "rust"),
            offline_dist_server=_opt_str(data, "offline-dist-server", "rust"),
            rustup=dict(rustup),
        )

    def to_toml_value(self) -> Dict[str, Any]:
        return _drop_empty(
            {
                "version": self.version,
                "profile": self.profile.to_toml_value() if self.profile else None,
                "components": self.components,
                "optional-components": self.optional_components,
                "name": self.name,
                "offline-dist-server": self.offline_dist_server,
                "rustup": self.rustup,
            }
        )


@dataclass
class Tools:
    descriptions: Dict[str, str] = field(default_factory=dict)
    # group name -> tool names, used for display only
    group: Dict[str, List[str]] = field(default_factory=dict)
    target: Dict[str, ToolMap] = field(default_factory=dict)

    @classmethod
    def parse(cls, data: Any) -> "Tools":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ManifestError("[tools] must be a table")
        descriptions = data.get("descriptions", {})
        groups = data.get("group", {})
        targets = data.get("target", {})
        if not isinstance(descriptions, dict) or not all(isinstance(v, str) for v in descriptions.values()):
            raise ManifestError("tools.descriptions must map tool names to strings")
        if not isinstance(groups, dict):
            raise ManifestError("tools.group must be a table")
        if not isinstance(targets, dict):
            raise ManifestError("tools.target must be a table")
        return cls(
            descriptions=dict(descriptions),
            group={name: _str_list(groups, name, "tools.group") for name in groups},
            target={triple: ToolMap.parse(triple, tools) for triple, tools in targets.items()},
        )

    def to_toml_value(self) -> Dict[str, Any]:
        return _drop_empty(
            {
                "descriptions": self.descriptions,
                "group": self.group,
                "target": {t: m.to_toml_value() for t, m in self.target.items()},
            }
        )


@dataclass
class Proxy:
    http: Optional[str] = None
    https: Optional[str] = None
    no_proxy: Optional[str] = None

    @classmethod
    def parse(cls, data: Any) -> "Proxy":
        if not isinstance(data, dict):
            raise ManifestError("[proxy] must be a table")
        return cls(
            http=_opt_str(data, "http", "proxy"),
            https=_opt_str(data, "https", "proxy"),
            no_proxy=_opt_str(data, "no-proxy", "proxy") or _opt_str(data, "no_proxy", "proxy"),
        )

    def to_toml_value(self) -> Dict[str, Any]:
        return _drop_empty({"http": self.http, "https": self.https, "no-proxy": self.no_proxy})

    def to_mounts(self, *, verify: bool = True) -> Dict[str, Optional[httpx.AsyncBaseTransport]]:
        """httpx transport mounts for these settings.

        An empty result means "no explicit proxy": the client keeps trusting the
        environment (`HTTP_PROXY`, `NO_PROXY`, ...).
        """

        if self.http is None and self.https is None:
            return {}

        def transport(url: str) -> httpx.AsyncBaseTransport:
            return httpx.AsyncHTTPTransport(proxy=url, verify=verify)

        mounts: Dict[str, Optional[httpx.AsyncBaseTransport]] = {}
        if self.http and self.https:
            # both set: the https proxy handles everything
            mounts["all://"] = transport(self.https)
        elif self.http:
            mounts["http://"] = transport(self.http)
        elif self.https:
            mounts["https://"] = transport(self.https)

        for host in (self.no_proxy or "").split(","):
            host = host.strip()
            if host:
                mounts[f"all://{host.lstrip('.')}"] = None
                mounts[f"all://*.{host.lstrip('.*')}"] = None
        return mounts


# ---------------------------------------------------------------------------
# The manifest


@dataclass
class ToolsetManifest:
    rust: RustToolchain
    tools: Tools = field(default_factory=Tools)
    name: Optional[str] = None
    version: Optional[str] = None
    proxy: Optional[Proxy] = None
    # Set only when loaded from a file, used to resolve relative paths.
    path: Optional[Path] = field(default=None, compare=False)

    FILENAME = "toolset-manifest.toml"

    # -- parsing / serialization ----------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolsetManifest":
        if "rust" not in data:
            raise ManifestError("missing required table [rust]")
        proxy = data.get("proxy")
        return cls(
            name=_opt_str(data, "name", "manifest"),
            version=_opt_str(data, "version", "manifest"),
            rust=RustToolchain.parse(data["rust"]),
            tools=Tools.parse(data.get("tools")),
            proxy=Proxy.parse(proxy) if proxy is not None else None,
        )

    @classmethod
    def from_str(cls, text: str) -> "ToolsetManifest":
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as e:
            raise ManifestError(f"malformed toolset manifest: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: Path) -> "ToolsetManifest":
        path = Path(path)
        try:
            text = read_to_string("manifest", path)
        except OSError as e:
            raise ManifestError(str(e)) from e
        manifest = cls.from_str(text)
        manifest.path = path
        return manifest

    @classmethod
    def load_from_install_dir(cls, install_dir: Path) -> "ToolsetManifest":
        """The copy of the manifest written into the install root after installing."""

        return cls.load(Path(install_dir) / cls.FILENAME)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.name is not None:
            data["name"] = self.name
        if self.version is not None:
            data["version"] = self.version
        data["rust"] = self.rust.to_toml_value()
        tools = self.tools.to_toml_value()
        if tools:
            data["tools"] = tools
        if self.proxy is not None:
            data["proxy"] = self.proxy.to_toml_value()
        return data

    def to_toml(self) -> str:
        return tomli_w.dumps(self.to_dict())

    def write_to_dir(self, directory: Path) -> Path:
        dest = ensure_dir(directory) / self.FILENAME
        dest.write_text(self.to_toml(), encoding="utf-8")
        return dest

    # -- queries ----------------------------------------------------------------

    def rust_version(self) -> str:
        return self.rust.version

    def optional_toolchain_components(self) -> List[str]:
        return list(self.rust.optional_components)

    def get_tool_description(self, tool: str) -> Optional[str]:
        return self.tools.descriptions.get(tool)

    def group_name(self, tool: str) -> Optional[str]:
        # A tool belongs to at most one group, first match wins.
        for group, members in self.tools.group.items():
            if tool in members:
                return group
        return None

    def toolchain_group_name(self) -> str:
        return self.rust.name or DEFAULT_TOOLCHAIN_GROUP

    def toolchain_profile(self) -> ToolchainProfile:
        return self.rust.profile or ToolchainProfile()

    def toolchain_display_name(self) -> str:
        profile = self.toolchain_profile()
        return profile.verbose_name or profile.name

    def current_target_tools(self, target: Optional[str] = None) -> Optional[ToolMap]:
        return self.tools.target.get(current_target(target))

    def package_root(self) -> Path:
        """Directory that relative paths in this manifest are resolved against.

        That is the manifest's own directory when it was loaded from disk, and
        the directory of the running program when it is the baked-in one.
        """

        if self.path is not None:
            return to_normalized_abspath(self.path).parent
        return current_exe().parent

    def rustup_bin(self, target: Optional[str] = None) -> Optional[Path]:
        rel = self.rust.rustup.get(current_target(target))
        if rel is None:
            return None
        return to_normalized_abspath(rel, self.package_root())

    def offline_dist_server(self) -> Optional[str]:
        """`file://` url of the bundled toolchain mirror, if any."""

        if not self.rust.offline_dist_server:
            return None
        full = to_normalized_abspath(self.rust.offline_dist_server, self.package_root())
        return full.as_uri()

    def already_installed_tools(
        self,
        target: Optional[str] = None,
        is_installed: Callable[[str], bool] = custom_instructions.is_installed,
    ) -> List[str]:
        """Tools of the target that were installed outside of this program (e.g. an editor)."""

        tools = self.current_target_tools(target)
        if tools is None:
            return []
        return [name for name in tools.names() if is_installed(name)]

    def current_target_components(
        self,
        fresh_install: bool,
        target: Optional[str] = None,
        is_installed: Callable[[str], bool] = custom_instructions.is_installed,
    ) -> List[Component]:
        """Flatten the manifest into components for `target`.

        Order: the toolchain profile (always first, always required), each
        optional toolchain component, then every tool of the target.
        """

        tc_version = self.rust_version()
        group = self.toolchain_group_name()
        profile = self.toolchain_profile()

        components = [
            Component(
                name=self.toolchain_display_name(),
                desc=profile.description or "",
                group=group,
                kind=ComponentType.TOOLCHAIN_PROFILE,
                required=True,
                version=tc_version,
            )
        ]
        for comp in self.optional_toolchain_components():
            components.append(
                Component(
                    name=comp,
                    desc=self.get_tool_description(comp) or "",
                    group=group,
                    kind=ComponentType.TOOLCHAIN_COMPONENT,
                    optional=True,
                    version=tc_version,
                )
            )

        tools = self.current_target_tools(target)
        if tools is not None:
            installed_in_env = (
                self.already_installed_tools(target, is_installed) if fresh_install else []
            )
            for name, info in tools.items():
                installed = name in installed_in_env
                # Installed by the user, not by us: we cannot vouch for its version.
                version = None if (fresh_install and installed) else info.version
                components.append(
                    Component(
                        name=name,
                        desc=self.get_tool_description(name) or "",
                        group=self.group_name(name),
                        kind=ComponentType.TOOL,
                        required=info.is_required(),
                        optional=info.is_optional(),
                        installed=installed,
                        version=version,
                        tool_installer=info,
                    )
                )
        return number_components(components)

    # -- mutation ---------------------------------------------------------------

    def adjust_paths(self, root: Optional[Path] = None) -> None:
        """Make every `path` tool source absolute and normalized.

        Relative paths are joined onto `root`, defaulting to `package_root()`.
        """

        base = Path(root) if root is not None else self.package_root()
        for tools in self.tools.target.values():
            for _key, info in tools.raw_items():
                if isinstance(info, PathInfo):
                    info.path = to_normalized_abspath(info.path, base)


# ---------------------------------------------------------------------------
# Loading with cache


def baked_in_manifest_raw() -> str:
    return (
        resources.files("rim_installer")
        .joinpath("resources", "toolset_manifest.toml")
        .read_text(encoding="utf-8")
    )


def baked_in_manifest() -> ToolsetManifest:
    return ToolsetManifest.from_str(baked_in_manifest_raw())


class ManifestCache:
    """Process-wide cache of loaded manifests, keyed by source url.

    `None` stands for the baked-in manifest. One lock guards the whole map,
    lookups are rare and cheap. Entries live until `clear()`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._manifests: Dict[Optional[str], ToolsetManifest] = {}

    def get(
        self,
        url: Optional[str] = None,
        *,
        insecure: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        temp_root: Optional[Path] = None,
    ) -> ToolsetManifest:
        with self._lock:
            cached = self._manifests.get(url)
            if cached is not None:
                logger.debug("Using in-memory cached toolset manifest (%s)", url or "baked-in")
                return copy.deepcopy(cached)

            if url is None:
                manifest = baked_in_manifest()
            else:
                manifest = _fetch_manifest(url, insecure=insecure, transport=transport, temp_root=temp_root)
            self._manifests[url] = manifest
            return copy.deepcopy(manifest)

    def clear(self) -> None:
        with self._lock:
            self._manifests.clear()


def _fetch_manifest(
    url: str,
    *,
    insecure: bool,
    transport: Optional[httpx.AsyncBaseTransport],
    temp_root: Optional[Path],
) -> ToolsetManifest:
    logger.debug("Downloading toolset manifest from %s", url)
    with make_temp_dir("toolset-manifest", temp_root) as tmp:
        dest = Path(tmp) / ToolsetManifest.FILENAME
        DownloadOpt("toolset manifest", insecure=insecure, transport=transport).blocking_download(url, dest)
        manifest = ToolsetManifest.from_str(read_to_string("manifest", dest))
    return manifest


def load_toolset_manifest(
    source: Optional[str], cache: Optional[ManifestCache] = None, **kwargs: Any
) -> ToolsetManifest:
    """Load a manifest from a file path, a url, or (when `source` is None) the baked-in one.

    Urls and the baked-in manifest go through `cache`. Path sources are made absolute.
    """

    if source is not None and "://" not in source:
        manifest = ToolsetManifest.load(Path(source))
    else:
        manifest = (cache or ManifestCache()).get(source, **kwargs)
    manifest.adjust_paths()
    return manifest
