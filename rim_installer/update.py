"""Update checks for the manager itself and for the installed toolkit.

A check stamps `last-run` in the update checker file before touching the
network, so a failing server cannot make a background poller spin. Network
and version-parse failures come back as `UpdateKind.UNCERTAIN`, never as
exceptions.
"""

from __future__ import annotations

import enum
import logging
import os
import shutil
import subprocess
import sys
import threading
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generic, List, Optional, TypeVar

import httpx
from packaging.version import InvalidVersion, Version

from . import __version__
from .errors import DownloadError, RimError
from .lib.download import DownloadOpt, url_join
from .lib.env import IS_WINDOWS, current_exe, current_target, exe, rim_dist_server
from .lib.fs import is_executable, make_temp_dir, set_exec_permission
from .toolkit import InstalledToolkitCache, Toolkit, latest_installable_toolkit, sanitize_version
from .updates import UpdateCheckerOpt, UpdateTarget

logger = logging.getLogger(__name__)

MANAGER_BIN = exe("rim-manager")

T = TypeVar("T")


class UpdateKind(enum.Enum):
    NEWER = "newer"
    UNCERTAIN = "uncertain"
    UNNEEDED = "unneeded"


@dataclass(frozen=True)
class UpdateResult(Generic[T]):
    kind: UpdateKind
    current: Optional[T] = None
    latest: Optional[T] = None

    @classmethod
    def newer(cls, current: T, latest: T) -> "UpdateResult[T]":
        return cls(UpdateKind.NEWER, current, latest)

    @classmethod
    def uncertain(cls) -> "UpdateResult[T]":
        return cls(UpdateKind.UNCERTAIN)

    @classmethod
    def unneeded(cls) -> "UpdateResult[T]":
        return cls(UpdateKind.UNNEEDED)

    def update_needed(self) -> bool:
        return self.kind is UpdateKind.NEWER


@dataclass(frozen=True)
class UpdatePayload:
    version: str
    # where the newer release can be fetched, for toolkits the manifest url
    url: Optional[str] = None


@dataclass(frozen=True)
class ReleaseInfo:
    version: Version
    # as published, used for skip matching and archive paths
    raw: str

    FILENAME = "release.toml"

    @classmethod
    def from_str(cls, text: str) -> "ReleaseInfo":
        try:
            data = tomllib.loads(text)
            raw = str(data["version"])
            return cls(Version(sanitize_version(raw)), raw)
        except (tomllib.TOMLDecodeError, KeyError, InvalidVersion) as e:
            raise RimError(f"invalid release info: {e}") from e


class ReleaseInfoCache:
    """Latest manager release, fetched at most once per process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._info: Optional[ReleaseInfo] = None

    def get(self, opt: "UpdateOpt") -> ReleaseInfo:
        with self._lock:
            if self._info is None:
                url = url_join(opt.server, f"manager/{ReleaseInfo.FILENAME}")
                raw = opt.download_opt("manager release info").blocking_read(url)
                self._info = ReleaseInfo.from_str(raw)
            return self._info


LATEST_RELEASE = ReleaseInfoCache()


@dataclass
class UpdateOpt:
    install_dir: Path
    insecure: bool = False
    server: str = field(default_factory=rim_dist_server)
    current_version: str = __version__
    target: Optional[str] = None
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, repr=False)
    release_cache: ReleaseInfoCache = field(default=LATEST_RELEASE, repr=False)
    installed_cache: Optional[InstalledToolkitCache] = field(default=None, repr=False)

    def download_opt(self, name: str) -> DownloadOpt:
        return DownloadOpt(name, insecure=self.insecure, transport=self.transport)

    def mark_checked(self, target: UpdateTarget) -> UpdateCheckerOpt:
        checker = UpdateCheckerOpt.load_from_dir(self.install_dir)
        checker.mark_checked(target).write_to_dir(self.install_dir)
        return checker

    def installed_toolkit(self) -> Optional[Toolkit]:
        if self.installed_cache is not None:
            return self.installed_cache.get(self.install_dir)
        return Toolkit.from_installation(self.install_dir)


def check_self_update(opt: UpdateOpt) -> UpdateResult[Version]:
    logger.info("Checking manager updates")
    checker = opt.mark_checked(UpdateTarget.MANAGER)

    try:
        release = opt.release_cache.get(opt)
    except RimError as e:
        logger.warning("Unable to fetch the latest manager version: %s", e)
        return UpdateResult.uncertain()
    latest = release.version

    if any(checker.is_skipped(UpdateTarget.MANAGER, v) for v in (release.raw, str(latest))):
        return UpdateResult.unneeded()

    try:
        current = Version(sanitize_version(opt.current_version))
    except InvalidVersion:
        logger.warning("Current manager version '%s' cannot be compared", opt.current_version)
        return UpdateResult.uncertain()

    if current < latest:
        return UpdateResult.newer(current, latest)
    return UpdateResult.unneeded()


def check_toolkit_update(opt: UpdateOpt) -> UpdateResult[UpdatePayload]:
    logger.info("Checking toolkit updates")
    checker = opt.mark_checked(UpdateTarget.TOOLKIT)

    try:
        installed = opt.installed_toolkit()
    except RimError as e:
        logger.warning("Unable to read the installed toolkit: %s", e)
        return UpdateResult.uncertain()
    if installed is None:
        logger.info("No toolkit installed")
        return UpdateResult.unneeded()

    try:
        latest = latest_installable_toolkit(
            installed, insecure=opt.insecure, server=opt.server, transport=opt.transport
        )
    except RimError as e:
        logger.warning("Unable to fetch the latest toolkit version: %s", e)
        return UpdateResult.uncertain()
    if latest is None:
        return UpdateResult.unneeded()

    if checker.is_skipped(UpdateTarget.TOOLKIT, latest.version):
        return UpdateResult.unneeded()

    return UpdateResult.newer(
        UpdatePayload(installed.version),
        UpdatePayload(latest.version, url=latest.manifest_url),
    )


def manager_download_url(opt: UpdateOpt, version: str) -> str:
    return url_join(opt.server, f"manager/archive/{version}/{current_target(opt.target)}/{MANAGER_BIN}")


def self_update(opt: UpdateOpt, *, skip_check: bool = False, exe_path: Optional[Path] = None) -> bool:
    """Replace the running manager with the latest release.

    Returns False when already up to date. The caller restarts the process.
    """

    if not skip_check and not check_self_update(opt).update_needed():
        logger.info("Latest manager version (%s) is already installed", opt.current_version)
        return False

    latest = opt.release_cache.get(opt).raw
    url = manager_download_url(opt, latest)
    logger.info("Downloading manager %s", latest)

    temp_root = opt.install_dir / "temp"
    with make_temp_dir("manager-download_", temp_root) as tmp:
        newer = Path(tmp) / MANAGER_BIN
        opt.download_opt("latest manager").blocking_download(url, newer)
        if not newer.is_file():
            raise DownloadError(f"downloaded manager is missing from '{newer}'")
        set_exec_permission(newer)
        if not is_executable(newer):
            raise RimError(f"downloaded file '{newer}' is not an executable")
        replace_running_executable(newer, exe_path)

    logger.info("Manager updated to %s", latest)
    return True


def replace_running_executable(new_path: Path, current: Optional[Path] = None) -> None:
    """Atomically put `new_path` in place of the running executable.

    The new file is staged next to the target first, so the final step is a
    rename on the same filesystem. A running image cannot be overwritten on
    Windows, there it is renamed to `<name>.old` first.
    """

    current = Path(current) if current is not None else current_exe()
    staged = current.with_name(f".{current.name}.new")
    shutil.copy2(new_path, staged)
    set_exec_permission(staged)

    if IS_WINDOWS:
        old = current.with_name(current.name + ".old")
        old.unlink(missing_ok=True)
        if current.exists():
            os.replace(current, old)
    try:
        os.replace(staged, current)
    except OSError:
        staged.unlink(missing_ok=True)
        raise
    logger.debug("Replaced %s", current)


def restart(args: Optional[List[str]] = None) -> None:
    """Start the (replaced) program again with the same arguments."""

    program = str(current_exe())
    argv = [program] + (sys.argv[1:] if args is None else list(args))
    logger.info("Restarting %s", program)
    if IS_WINDOWS:
        subprocess.Popen(argv)
        sys.exit(0)
    os.execv(program, argv)
