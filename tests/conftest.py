"""
Shared test fixtures and configuration.
"""

from pathlib import Path
from typing import Callable, Dict, List, Tuple, Union

import httpx
import pytest

from rim_installer.install import InstallConfiguration

TARGET = "x86_64-unknown-linux-gnu"

SAMPLE_MANIFEST = """
name = "Test Toolkit"
version = "stable 1.0.0"

[rust]
version = "1.82.0"
profile = { name = "minimal", verbose-name = "Basic", description = "Basic toolchain" }
components = ["clippy", "rustfmt"]
optional-components = ["rust-docs", "llvm-tools"]

[tools.descriptions]
cargo-nextest = "Next-generation test runner"
vscode = "Editor"

[tools.group]
Extras = ["cargo-nextest", "typos-cli"]

[tools.target.x86_64-unknown-linux-gnu]
cargo-nextest = "0.9.72"
typos = { ver = "1.23.0", identifier = "typos-cli", optional = true }
"VS Code" = { path = "packages/vscode", identifier = "vscode", required = true }
mytool = { url = "https://example.com/downloads/mytool-1.0.tar.gz", version = "1.0" }

[tools.target.x86_64-pc-windows-msvc]
mingw64 = { path = "packages/mingw64.zip", version = "14.1.0" }
"""

Route = Union[Tuple[int, bytes], Callable[[httpx.Request], httpx.Response]]


class RecordingPathEditor:
    """PATH editor that only remembers what it was asked to do."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Path]] = []
        self.paths: List[Path] = []

    def add(self, path: Path) -> None:
        self.calls.append(("add", Path(path)))
        if Path(path) not in self.paths:
            self.paths.append(Path(path))

    def remove(self, path: Path) -> None:
        self.calls.append(("remove", Path(path)))
        self.paths = [p for p in self.paths if p != Path(path)]

    def entries(self) -> List[Path]:
        return list(self.paths)


class FakeToolchainInstaller:
    """Stands in for rustup: records calls and fakes a cargo binary."""

    def __init__(self) -> None:
        self.installed: List[List[str]] = []
        self.updated: List[str] = []
        self.removed = 0

    def install(self, config, manifest, optional_components=()):
        components = list(manifest.rust.components) + [
            c for c in optional_components if c not in manifest.rust.components
        ]
        config.cargo_bin.mkdir(parents=True, exist_ok=True)
        (config.cargo_bin / "cargo").write_text("#!/bin/sh\n")
        self.installed.append(components)
        return components

    def update(self, config, manifest):
        self.updated.append(manifest.rust_version())

    def remove_self(self, config):
        self.removed += 1


class MockServer:
    """`httpx.MockTransport` serving fixed routes, recording every request."""

    def __init__(self, routes: Dict[str, Route]) -> None:
        self.routes = dict(routes)
        self.requests: List[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404, content=b"not found")
        if callable(route):
            return route(request)
        status, content = route
        return httpx.Response(status, content=content)

    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]


@pytest.fixture(autouse=True)
def fixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pin the target triple and keep the host environment out of the tests."""
    monkeypatch.setenv("RIM_TARGET", TARGET)
    monkeypatch.delenv("MODE", raising=False)
    monkeypatch.delenv("RIM_DIST_SERVER", raising=False)
    monkeypatch.setattr("rim_installer.custom_instructions.cmd_exists", lambda program: False)
    monkeypatch.setattr("rim_installer.lib.download.RETRY_DELAY", 0)


@pytest.fixture
def manifest_text() -> str:
    return SAMPLE_MANIFEST


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    """Return an (empty) install root."""
    path = tmp_path / "rim"
    path.mkdir()
    return path


@pytest.fixture
def path_editor() -> RecordingPathEditor:
    return RecordingPathEditor()


@pytest.fixture
def toolchain_installer() -> FakeToolchainInstaller:
    return FakeToolchainInstaller()


@pytest.fixture
def commands(monkeypatch: pytest.MonkeyPatch) -> List[List[str]]:
    """Capture external commands instead of running them."""
    from rim_installer.lib.command import CmdResult

    ran: List[List[str]] = []

    def fake_run_cmd(argv, **kwargs):
        argv = [str(a) for a in argv]
        ran.append(argv)
        return CmdResult(argv=argv, returncode=0, stdout="", stderr="")

    for module in ("rim_installer.install", "rim_installer.tools", "rim_installer.rustup"):
        monkeypatch.setattr(f"{module}.run_cmd", fake_run_cmd)
    return ran


@pytest.fixture
def config(install_dir, path_editor, toolchain_installer, commands) -> InstallConfiguration:
    return InstallConfiguration(
        install_dir,
        no_modify_path=True,
        path_editor=path_editor,
        toolchain_installer=toolchain_installer,
    )


@pytest.fixture
def mock_server() -> Callable[[Dict[str, Route]], MockServer]:
    return MockServer
