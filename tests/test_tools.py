"""
Tests for tool classification and the per-shape install/uninstall routines.
"""

from pathlib import Path

import pytest

from rim_installer.errors import ClassifyError, CommandError, InstallError
from rim_installer.fingerprint import ToolRecord
from rim_installer.tools import (
    CargoTool,
    Custom,
    DirWithBin,
    Executables,
    Plugin,
    PluginType,
    classify,
    from_record,
)


def _touch(path: Path, content: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


# ── Classification ───────────────────────────────────────────────────


class TestClassify:
    def test_missing_path(self, tmp_path):
        with pytest.raises(ClassifyError, match="does not exist"):
            classify("tool", tmp_path / "nope")

    def test_custom_instruction_wins(self, tmp_path):
        src = tmp_path / "vscode"
        src.mkdir()
        tool = classify("vscode", src)
        assert isinstance(tool, Custom)
        assert tool.path == src

    def test_single_executable(self, tmp_path):
        tool = classify("tool", _touch(tmp_path / "tool"))
        assert isinstance(tool, Executables)
        assert tool.paths == [tmp_path / "tool"]

    def test_vsix_plugin(self, tmp_path):
        tool = classify("ext", _touch(tmp_path / "rust-analyzer.VSIX"))
        assert isinstance(tool, Plugin)
        assert tool.plugin_type is PluginType.VSIX

    def test_unknown_file_format(self, tmp_path):
        with pytest.raises(ClassifyError, match="unknown file format 'txt'"):
            classify("tool", _touch(tmp_path / "notes.txt"))

    def test_dir_with_bin(self, tmp_path):
        _touch(tmp_path / "pkg" / "bin" / "tool")
        _touch(tmp_path / "pkg" / "README")
        tool = classify("tool", tmp_path / "pkg")
        assert isinstance(tool, DirWithBin)
        assert tool.path == tmp_path / "pkg"

    def test_dir_with_only_bin(self, tmp_path):
        _touch(tmp_path / "pkg" / "bin" / "foo")
        assert isinstance(classify("tool", tmp_path / "pkg"), DirWithBin)

    def test_dir_of_executables(self, tmp_path):
        _touch(tmp_path / "pkg" / "one")
        _touch(tmp_path / "pkg" / "two")
        _touch(tmp_path / "pkg" / "LICENSE.md")
        tool = classify("tool", tmp_path / "pkg")
        assert isinstance(tool, Executables)
        assert tool.paths == [tmp_path / "pkg" / "one", tmp_path / "pkg" / "two"]

    def test_empty_dir_is_not_supported(self, tmp_path):
        (tmp_path / "pkg").mkdir()
        with pytest.raises(ClassifyError, match="not supported"):
            classify("tool", tmp_path / "pkg")

    def test_nested_dir_without_bin_is_not_supported(self, tmp_path):
        _touch(tmp_path / "pkg" / "lib" / "x.so")
        with pytest.raises(ClassifyError):
            classify("tool", tmp_path / "pkg")

    def test_unknown_plugin_type(self):
        with pytest.raises(ClassifyError):
            PluginType.from_extension("jar")


# ── Install / uninstall ──────────────────────────────────────────────


class TestExecutables:
    def test_install_copies_into_cargo_bin(self, config, tmp_path):
        config.cargo_bin.mkdir(parents=True)
        src = _touch(tmp_path / "src" / "tool")
        record = Executables("tool", [src]).install(config)
        assert (config.cargo_bin / "tool").is_file()
        assert src.is_file()
        assert record.kind == "executables"
        assert record.paths == [config.cargo_bin / "tool"]

    def test_uninstall_skips_missing(self, config, tmp_path):
        present = _touch(tmp_path / "present")
        Executables("tool", [present, tmp_path / "gone"]).uninstall(config)
        assert not present.exists()


class TestDirWithBin:
    def test_install_moves_and_adds_bin_to_path(self, config, tmp_path, path_editor):
        _touch(tmp_path / "pkg" / "bin" / "tool")
        record = DirWithBin("tool", tmp_path / "pkg").install(config)

        dest = config.tools_dir / "tool"
        assert (dest / "bin" / "tool").is_file()
        assert not (tmp_path / "pkg").exists()
        assert path_editor.calls == [("add", dest / "bin")]
        assert record.paths == [dest]
        assert record.kind == "dir-with-bin"

    def test_uninstall_removes_path_entry_before_directory(self, config, tmp_path):
        dest = tmp_path / "tools" / "tool"
        _touch(dest / "bin" / "tool")
        seen = []

        class Editor:
            def remove(self, path):
                seen.append((path, dest.exists()))

        config.path_editor = Editor()
        DirWithBin("tool", dest).uninstall(config)

        assert seen == [(dest / "bin", True)]
        assert not dest.exists()

    def test_uninstall_survives_path_editor_failure(self, config, tmp_path):
        dest = tmp_path / "tools" / "tool"
        _touch(dest / "bin" / "tool")

        class Editor:
            def remove(self, path):
                raise OSError("registry locked")

        config.path_editor = Editor()
        DirWithBin("tool", dest).uninstall(config)
        assert not dest.exists()


class TestCustom:
    def test_vscode_goes_to_tools_dir(self, config, tmp_path, path_editor):
        _touch(tmp_path / "vscode" / "bin" / "code")
        record = Custom("vscode", tmp_path / "vscode").install(config)
        assert record.paths == [config.tools_dir / "vscode"]
        assert path_editor.entries() == [config.tools_dir / "vscode" / "bin"]

        Custom("vscode").uninstall(config)
        assert not (config.tools_dir / "vscode").exists()
        assert path_editor.entries() == []

    def test_install_without_path(self, config):
        with pytest.raises(InstallError, match="no source path"):
            Custom("vscode").install(config)


class TestPlugin:
    def test_install_uses_first_editor_found(self, config, tmp_path, commands, monkeypatch):
        monkeypatch.setattr("rim_installer.tools.which", lambda p: "/usr/bin/code" if p == "code" else None)
        config.tools_dir.mkdir(parents=True)
        vsix = _touch(tmp_path / "ext.vsix")

        record = Plugin("ext", PluginType.VSIX, vsix).install(config)

        assert commands == [["/usr/bin/code", "--install-extension", str(vsix)]]
        assert record.paths == [config.tools_dir / "ext.vsix"]
        assert (config.tools_dir / "ext.vsix").is_file()

    def test_uninstall_tolerates_editor_failure(self, config, tmp_path, monkeypatch):
        monkeypatch.setattr("rim_installer.tools.which", lambda p: "/usr/bin/code" if p == "code" else None)

        def failing(argv, **kwargs):
            raise CommandError(list(argv), 1, "extension not found")

        monkeypatch.setattr("rim_installer.tools.run_cmd", failing)
        vsix = _touch(tmp_path / "ext.vsix")

        Plugin("ext", PluginType.VSIX, vsix).uninstall(config)
        assert not vsix.exists()

    def test_install_failure_propagates(self, config, tmp_path, monkeypatch):
        monkeypatch.setattr("rim_installer.tools.which", lambda p: "/usr/bin/code" if p == "code" else None)

        def failing(argv, **kwargs):
            raise CommandError(list(argv), 1, "bad package")

        monkeypatch.setattr("rim_installer.tools.run_cmd", failing)
        with pytest.raises(CommandError):
            Plugin("ext", PluginType.VSIX, _touch(tmp_path / "ext.vsix")).install(config)


class TestCargoTool:
    def test_requires_cargo(self, config):
        config.cargo_is_installed = False
        with pytest.raises(InstallError, match="cargo is not installed"):
            CargoTool("cargo-nextest").install(config)

    def test_runs_cargo_with_toolkit_cargo_home(self, config, commands):
        config.cargo_is_installed = True
        record = CargoTool("typos-cli", ["typos-cli", "--version", "1.23.0"]).install(config)
        assert commands == [[str(config.cargo_bin / "cargo"), "install", "typos-cli", "--version", "1.23.0"]]
        assert record.use_cargo

    def test_uninstall_by_name(self, config, commands):
        CargoTool("cargo-nextest").uninstall(config)
        assert commands == [[str(config.cargo_bin / "cargo"), "uninstall", "cargo-nextest"]]


# ── Rebuilding from records ──────────────────────────────────────────


class TestFromRecord:
    def test_cargo_record(self):
        assert isinstance(from_record("t", ToolRecord.cargo_tool()), CargoTool)

    def test_kinds(self, tmp_path):
        assert isinstance(from_record("t", ToolRecord.with_paths([tmp_path], kind="dir-with-bin")), DirWithBin)
        assert isinstance(from_record("t", ToolRecord.with_paths([tmp_path / "x.vsix"], kind="plugin")), Plugin)
        custom = from_record("vscode", ToolRecord.with_paths([tmp_path], kind="custom"))
        assert isinstance(custom, Custom)

    def test_record_without_paths(self):
        assert from_record("t", ToolRecord(kind="executables")) is None

    def test_legacy_record_is_classified(self, tmp_path):
        tool = from_record("t", ToolRecord(paths=[_touch(tmp_path / "t")]))
        assert isinstance(tool, Executables)

    def test_legacy_record_with_nothing_on_disk(self, tmp_path):
        assert from_record("t", ToolRecord(paths=[tmp_path / "gone"])) is None
