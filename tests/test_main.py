"""
Tests for the command line entry point.
"""

import json

import pytest

from rim_installer import main as cli
from rim_installer.fingerprint import InstallationRecord, ToolRecord
from rim_installer.updates import DEFAULT_UPDATE_CHECK_TIMEOUT_MINUTES, UpdateCheckerOpt, UpdateTarget


@pytest.fixture(autouse=True)
def no_logging_setup(monkeypatch):
    # keep the root logger of the test session untouched
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: kwargs.get("log_path"))


class TestModeSelection:
    def test_program_name(self):
        assert cli.is_manager_mode("/opt/rust/rim-manager")
        assert not cli.is_manager_mode("/tmp/rim-installer")

    def test_env_overrides_program_name(self, monkeypatch):
        monkeypatch.setenv("MODE", "installer")
        assert not cli.is_manager_mode("rim-manager")
        monkeypatch.setenv("MODE", "MANAGER")
        assert cli.is_manager_mode("rim-installer")


class TestUpdatePreferences:
    def test_skip(self, install_dir, capsys):
        code = cli.main(["skip", "--install-dir", str(install_dir), "toolkit", "stable 1.1.0"])
        assert code == 0
        assert "will not be offered again" in capsys.readouterr().out
        assert UpdateCheckerOpt.load_from_dir(install_dir).is_skipped(UpdateTarget.TOOLKIT, "stable 1.1.0")

    def test_remind_later(self, install_dir):
        UpdateCheckerOpt().remind_later(UpdateTarget.MANAGER, 10).write_to_dir(install_dir)
        assert cli.main(["remind-later", "--install-dir", str(install_dir), "manager", "5"]) == 0
        conf = UpdateCheckerOpt.load_from_dir(install_dir).conf(UpdateTarget.MANAGER)
        assert conf.timeout == DEFAULT_UPDATE_CHECK_TIMEOUT_MINUTES + 15

    def test_unknown_target_is_rejected(self, install_dir):
        with pytest.raises(SystemExit):
            cli.main(["skip", "--install-dir", str(install_dir), "editor", "1.0"])


class TestErrors:
    def test_install_with_missing_manifest(self, tmp_path, capsys):
        code = cli.main(
            ["install", "--manifest", str(tmp_path / "missing.toml"), "--prefix", str(tmp_path / "rust"), "-y"]
        )
        assert code == 1
        err = capsys.readouterr().err
        assert err.startswith("error: install:")
        assert "missing.toml" in err

    def test_uninstall_unknown_tool(self, install_dir, capsys):
        InstallationRecord(install_dir).set_toolkit_meta("Test Toolkit", "stable 1.0.0")
        code = cli.main(["uninstall", "--install-dir", str(install_dir), "--tool", "ghost"])
        assert code == 1
        assert "ghost" in capsys.readouterr().err

    def test_uninstall_with_corrupt_record(self, install_dir, capsys):
        (install_dir / ".fingerprint").write_text(f'root = "{install_dir.as_posix()}"\n[rust]\ncomponents = []\n')
        code = cli.main(["uninstall", "--install-dir", str(install_dir), "--tool", "cargo-nextest"])
        assert code == 1
        err = capsys.readouterr().err
        assert err.startswith("error: uninstall:")
        assert "no 'version'" in err


class TestList:
    def test_components_with_install_state(self, install_dir, manifest_text, capsys):
        (install_dir / "toolset-manifest.toml").write_text(manifest_text)
        record = InstallationRecord(install_dir)
        record.record_tool("cargo-nextest", ToolRecord.cargo_tool())

        assert cli.main(["--verbose", "list", "--install-dir", str(install_dir)]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert "cargo-nextest 0.9.72 (installed)" in lines
        assert "mytool 1.0" in lines

    def test_json_components(self, install_dir, manifest_text, capsys):
        (install_dir / "toolset-manifest.toml").write_text(manifest_text)
        InstallationRecord(install_dir).record_tool("cargo-nextest", ToolRecord.cargo_tool())

        assert cli.main(["list", "--install-dir", str(install_dir), "--json"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert (data[0]["name"], data[0]["kind"], data[0]["required"]) == ("Basic", "ToolchainProfile", True)
        assert [entry["id"] for entry in data] == list(range(len(data)))
        nextest = next(entry for entry in data if entry["name"] == "cargo-nextest")
        assert nextest["installed"] is True
        assert nextest["version"] == "0.9.72"

    def test_json_installed_toolkit(self, install_dir, capsys):
        InstallationRecord(install_dir).set_toolkit_meta("Test Toolkit", "stable 1.0.0")

        assert cli.main(["list", "--install-dir", str(install_dir), "--toolkits", "--installed", "--json"]) == 0

        assert json.loads(capsys.readouterr().out) == [
            {
                "name": "Test Toolkit",
                "version": "stable 1.0.0",
                "desc": None,
                "info": None,
                "manifestURL": None,
                "components": [],
                "installed": True,
            }
        ]
