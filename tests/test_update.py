"""
Tests for manager/toolkit update checks and the self update.
"""

import os

import httpx
import pytest

from rim_installer.errors import RimError
from rim_installer.fingerprint import InstallationRecord
from rim_installer.update import (
    ReleaseInfo,
    ReleaseInfoCache,
    UpdateKind,
    UpdateOpt,
    check_self_update,
    check_toolkit_update,
    manager_download_url,
    replace_running_executable,
    self_update,
)
from rim_installer.updates import EPOCH, UpdateCheckerOpt, UpdateTarget

SERVER = "https://dist.example.com"
RELEASE_URL = f"{SERVER}/manager/release.toml"
DIST_URL = f"{SERVER}/dist/distribution-manifest.toml"
BINARY_URL = f"{SERVER}/manager/archive/1.3.0/x86_64-unknown-linux-gnu/rim-manager"

DIST_MANIFEST = b"""
[[packages]]
name = "Rust Toolkit"
version = "stable 1.80.1"
manifest-url = "https://dist.example.com/dist/stable-1.80.1.toml"

[[packages]]
name = "Rust Toolkit"
version = "stable 1.81.0"
manifest-url = "https://dist.example.com/dist/stable-1.81.0.toml"
"""


def _opt(install_dir, server, current="1.2.0"):
    return UpdateOpt(
        install_dir,
        server=SERVER,
        current_version=current,
        transport=server.transport,
        release_cache=ReleaseInfoCache(),
    )


def _install_toolkit(install_dir, version="stable 1.80.1"):
    InstallationRecord(install_dir).set_toolkit_meta("Rust Toolkit", version)


# ── Release info ─────────────────────────────────────────────────────


class TestReleaseInfo:
    def test_parse(self):
        assert str(ReleaseInfo.from_str('version = "1.3.0"\n').version) == "1.3.0"

    def test_keeps_published_spelling(self):
        info = ReleaseInfo.from_str('version = "v1.3.0-rc.1"\n')
        assert info.raw == "v1.3.0-rc.1"
        assert str(info.version) == "1.3.0rc1"

    @pytest.mark.parametrize("text", ["", 'version = "not a version"', "version ="])
    def test_invalid(self, text):
        with pytest.raises(RimError):
            ReleaseInfo.from_str(text)

    def test_fetched_once(self, install_dir, mock_server):
        server = mock_server({RELEASE_URL: (200, b'version = "1.3.0"\n')})
        opt = _opt(install_dir, server)
        check_self_update(opt)
        check_self_update(opt)
        assert server.urls() == [RELEASE_URL]


# ── Manager ──────────────────────────────────────────────────────────


class TestCheckSelfUpdate:
    def test_newer(self, install_dir, mock_server):
        server = mock_server({RELEASE_URL: (200, b'version = "1.3.0"\n')})
        result = check_self_update(_opt(install_dir, server))
        assert result.kind is UpdateKind.NEWER
        assert result.update_needed()
        assert (str(result.current), str(result.latest)) == ("1.2.0", "1.3.0")

    def test_up_to_date(self, install_dir, mock_server):
        server = mock_server({RELEASE_URL: (200, b'version = "1.3.0"\n')})
        assert check_self_update(_opt(install_dir, server, current="1.3.0")).kind is UpdateKind.UNNEEDED

    def test_skipped_version(self, install_dir, mock_server):
        server = mock_server({RELEASE_URL: (200, b'version = "1.3.0"\n')})
        UpdateCheckerOpt().skip(UpdateTarget.MANAGER, "1.3.0").write_to_dir(install_dir)
        assert check_self_update(_opt(install_dir, server)).kind is UpdateKind.UNNEEDED

    def test_skip_only_matches_exact_version(self, install_dir, mock_server):
        server = mock_server({RELEASE_URL: (200, b'version = "1.3.0"\n')})
        UpdateCheckerOpt().skip(UpdateTarget.MANAGER, "1.2.3").write_to_dir(install_dir)
        assert check_self_update(_opt(install_dir, server)).kind is UpdateKind.NEWER

    def test_skip_matches_published_version(self, install_dir, mock_server):
        server = mock_server({RELEASE_URL: (200, b'version = "1.3.0-rc.1"\n')})
        UpdateCheckerOpt().skip(UpdateTarget.MANAGER, "1.3.0-rc.1").write_to_dir(install_dir)
        assert check_self_update(_opt(install_dir, server)).kind is UpdateKind.UNNEEDED

    def test_version_prefixes_are_stripped(self, install_dir, mock_server):
        server = mock_server({RELEASE_URL: (200, b'version = "v1.3.0"\n')})
        result = check_self_update(_opt(install_dir, server, current="v1.2.0"))
        assert result.kind is UpdateKind.NEWER
        assert (str(result.current), str(result.latest)) == ("1.2.0", "1.3.0")

        assert check_self_update(_opt(install_dir, server, current="stable 1.3.0")).kind is UpdateKind.UNNEEDED

    def test_server_failure_is_uncertain(self, install_dir, mock_server):
        server = mock_server({})
        assert check_self_update(_opt(install_dir, server)).kind is UpdateKind.UNCERTAIN

    def test_transport_error_is_uncertain(self, install_dir):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        opt = UpdateOpt(
            install_dir,
            server=SERVER,
            transport=httpx.MockTransport(refuse),
            release_cache=ReleaseInfoCache(),
        )
        assert check_self_update(opt).kind is UpdateKind.UNCERTAIN

    def test_last_run_is_stamped_before_network(self, install_dir, mock_server):
        stamped = []

        def release(request):
            conf = UpdateCheckerOpt.load_from_dir(install_dir).confs.get(UpdateTarget.MANAGER)
            stamped.append(conf is not None and conf.last_run > EPOCH)
            return httpx.Response(500)

        server = mock_server({RELEASE_URL: release})
        check_self_update(_opt(install_dir, server))
        assert stamped == [True]

    def test_corrupt_checker_file_is_replaced(self, install_dir, mock_server):
        server = mock_server({RELEASE_URL: (200, b'version = "1.3.0"\n')})
        (install_dir / ".updates").write_text('[manager]\nlast-run = "garbage"\n')

        assert check_self_update(_opt(install_dir, server)).kind is UpdateKind.NEWER
        assert UpdateCheckerOpt.load_from_dir(install_dir).conf(UpdateTarget.MANAGER).last_run > EPOCH


# ── Toolkit ──────────────────────────────────────────────────────────


class TestCheckToolkitUpdate:
    def test_nothing_installed(self, install_dir, mock_server):
        server = mock_server({DIST_URL: (200, DIST_MANIFEST)})
        assert check_toolkit_update(_opt(install_dir, server)).kind is UpdateKind.UNNEEDED
        assert server.requests == []

    def test_newer(self, install_dir, mock_server):
        _install_toolkit(install_dir)
        server = mock_server({DIST_URL: (200, DIST_MANIFEST)})

        result = check_toolkit_update(_opt(install_dir, server))

        assert result.kind is UpdateKind.NEWER
        assert result.current.version == "stable 1.80.1"
        assert result.latest.version == "stable 1.81.0"
        assert result.latest.url == "https://dist.example.com/dist/stable-1.81.0.toml"

    def test_up_to_date(self, install_dir, mock_server):
        _install_toolkit(install_dir, "stable 1.81.0")
        server = mock_server({DIST_URL: (200, DIST_MANIFEST)})
        assert check_toolkit_update(_opt(install_dir, server)).kind is UpdateKind.UNNEEDED

    def test_skipped_version(self, install_dir, mock_server):
        _install_toolkit(install_dir)
        UpdateCheckerOpt().skip(UpdateTarget.TOOLKIT, "stable 1.81.0").write_to_dir(install_dir)
        server = mock_server({DIST_URL: (200, DIST_MANIFEST)})
        assert check_toolkit_update(_opt(install_dir, server)).kind is UpdateKind.UNNEEDED

    def test_server_failure_is_uncertain(self, install_dir, mock_server):
        _install_toolkit(install_dir)
        server = mock_server({DIST_URL: (503, b"")})
        assert check_toolkit_update(_opt(install_dir, server)).kind is UpdateKind.UNCERTAIN

    def test_unreadable_record_is_uncertain(self, install_dir, mock_server):
        (install_dir / ".fingerprint").write_text("not toml [")
        server = mock_server({DIST_URL: (200, DIST_MANIFEST)})
        assert check_toolkit_update(_opt(install_dir, server)).kind is UpdateKind.UNCERTAIN

    def test_stamps_its_own_target(self, install_dir, mock_server):
        server = mock_server({})
        check_toolkit_update(_opt(install_dir, server))
        checker = UpdateCheckerOpt.load_from_dir(install_dir)
        assert UpdateTarget.TOOLKIT in checker.confs
        assert UpdateTarget.MANAGER not in checker.confs


# ── Self update ──────────────────────────────────────────────────────


class TestSelfUpdate:
    def test_download_url(self, install_dir, mock_server):
        opt = _opt(install_dir, mock_server({}))
        assert manager_download_url(opt, ReleaseInfo.from_str('version = "1.3.0"').raw) == BINARY_URL

    def test_replaces_executable(self, install_dir, mock_server):
        current = install_dir / "rim-manager"
        current.write_bytes(b"old")
        server = mock_server(
            {
                RELEASE_URL: (200, b'version = "1.3.0"\n'),
                BINARY_URL: (200, b"new"),
            }
        )

        assert self_update(_opt(install_dir, server), exe_path=current)

        assert current.read_bytes() == b"new"
        assert os.access(current, os.X_OK)
        assert not (install_dir / ".rim-manager.new").exists()
        assert list((install_dir / "temp").iterdir()) == []

    def test_up_to_date_downloads_nothing(self, install_dir, mock_server):
        current = install_dir / "rim-manager"
        current.write_bytes(b"old")
        server = mock_server({RELEASE_URL: (200, b'version = "1.2.0"\n')})

        assert not self_update(_opt(install_dir, server), exe_path=current)

        assert current.read_bytes() == b"old"
        assert server.urls() == [RELEASE_URL]

    def test_failed_download_keeps_current(self, install_dir, mock_server):
        current = install_dir / "rim-manager"
        current.write_bytes(b"old")
        server = mock_server({RELEASE_URL: (200, b'version = "1.3.0"\n')})

        with pytest.raises(RimError):
            self_update(_opt(install_dir, server), exe_path=current)
        assert current.read_bytes() == b"old"

    def test_replace_running_executable(self, tmp_path):
        current = tmp_path / "prog"
        current.write_bytes(b"old")
        new = tmp_path / "download" / "prog"
        new.parent.mkdir()
        new.write_bytes(b"new")

        replace_running_executable(new, current)

        assert current.read_bytes() == b"new"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["download", "prog"]
