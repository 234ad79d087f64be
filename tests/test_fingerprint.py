"""
Tests for the installation record and install root discovery.
"""

from pathlib import Path

import pytest

from rim_installer.errors import InstallationRecordError
from rim_installer.fingerprint import InstallationRecord, ToolRecord, get_installed_dir


class TestInstallationRecord:
    def test_round_trip_through_disk(self, install_dir):
        record = InstallationRecord(install_dir)
        record.set_toolkit_meta("Test Toolkit", "stable 1.0.0")
        record.add_rust_record("1.82.0", ["clippy", "rustfmt"])
        record.record_tool("cargo-nextest", ToolRecord.cargo_tool())
        record.record_tool("vscode", ToolRecord.with_paths([install_dir / "tools" / "vscode"], kind="custom"))

        loaded = InstallationRecord.load_from_dir(install_dir)
        assert loaded == record
        assert loaded.installed_tools() == ["cargo-nextest", "vscode"]
        assert loaded.tools["cargo-nextest"].use_cargo
        assert loaded.tools["vscode"].paths == [install_dir / "tools" / "vscode"]

    def test_every_mutation_is_persisted(self, install_dir):
        record = InstallationRecord(install_dir)
        record.record_tool("typos-cli", ToolRecord.cargo_tool())
        assert "typos-cli" in InstallationRecord.load_from_dir(install_dir).tools

        record.remove_tool_record("typos-cli")
        assert InstallationRecord.load_from_dir(install_dir).tools == {}

    def test_no_temporary_file_left(self, install_dir):
        InstallationRecord(install_dir).set_toolkit_meta("kit", "1")
        assert sorted(p.name for p in install_dir.iterdir()) == [".fingerprint"]

    def test_missing_record(self, install_dir):
        with pytest.raises(InstallationRecordError, match="cannot be found"):
            InstallationRecord.load_from_dir(install_dir)

    def test_root_mismatch(self, install_dir, tmp_path):
        InstallationRecord(tmp_path / "elsewhere").write()
        (tmp_path / "elsewhere" / ".fingerprint").rename(install_dir / ".fingerprint")
        with pytest.raises(InstallationRecordError, match="does not match"):
            InstallationRecord.load_from_dir(install_dir)

    def test_malformed(self, install_dir):
        (install_dir / ".fingerprint").write_text("root = ")
        with pytest.raises(InstallationRecordError, match="malformed"):
            InstallationRecord.load_from_dir(install_dir)

    @pytest.mark.parametrize(
        "body, message",
        [
            ("[rust]\ncomponents = []\n", "no 'version'"),
            ('rust = "1.82.0"\n', "must be a table"),
            ('[rust]\nversion = "1.82.0"\ncomponents = "clippy"\n', "list of names"),
            ("tools = 5\n", "'tools'"),
            ('[tools.nextest]\npaths = "/x/bin"\n', "'paths' of tool 'nextest'"),
        ],
    )
    def test_wrongly_typed_entries(self, install_dir, body, message):
        (install_dir / ".fingerprint").write_text(f'root = "{install_dir.as_posix()}"\n{body}')
        with pytest.raises(InstallationRecordError, match=message):
            InstallationRecord.load_from_dir(install_dir)

    def test_load_or_new(self, install_dir):
        record = InstallationRecord.load_or_new(install_dir)
        assert record.tools == {}
        assert not InstallationRecord.exists(install_dir)

    def test_delete(self, install_dir):
        record = InstallationRecord(install_dir)
        record.write()
        record.delete()
        record.delete()
        assert not InstallationRecord.exists(install_dir)


class TestGetInstalledDir:
    def test_dir_of_the_manager(self, install_dir):
        InstallationRecord(install_dir).write()
        assert get_installed_dir(install_dir / "rim-manager") == install_dir

    def test_stray_copy_is_rejected(self, tmp_path):
        with pytest.raises(InstallationRecordError, match="cannot be found"):
            get_installed_dir(tmp_path / "rim-manager")

    def test_copied_record_is_rejected(self, install_dir, tmp_path):
        InstallationRecord(install_dir).write()
        other = tmp_path / "copy"
        other.mkdir()
        (other / ".fingerprint").write_bytes((install_dir / ".fingerprint").read_bytes())
        with pytest.raises(InstallationRecordError):
            get_installed_dir(other / "rim-manager")

    def test_filesystem_root(self):
        with pytest.raises(InstallationRecordError, match="root directory"):
            get_installed_dir(Path("/rim-manager"))
