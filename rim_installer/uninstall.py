from __future__ import annotations

import logging
from typing import List, Sequence

from .errors import InstallError, RimError
from .fingerprint import InstallationRecord
from .install import InstallConfiguration
from .lib.env import IS_WINDOWS, home_dir
from .lib.fs import remove_path
from .lib.path_env import remove_from_shell_profiles
from .tools import from_record
from .toolset_manifest import ToolsetManifest
from .updates import UpdateCheckerOpt

logger = logging.getLogger(__name__)


def uninstall_tool(config: InstallConfiguration, record: InstallationRecord, name: str) -> None:
    """Uninstall one recorded tool and drop it from the record.

    Lookups use the name stored in the record, whatever the current manifest says.
    """

    tool_record = record.tools.get(name)
    if tool_record is None:
        raise InstallError(f"uninstall tool '{name}'", "tool is not installed")

    tool = from_record(name, tool_record)
    if tool is None:
        logger.warning("Nothing left on disk for %s, only dropping its record", name)
    else:
        logger.info("Uninstalling tool %s", name)
        try:
            tool.uninstall(config)
        except (RimError, OSError, KeyError) as e:
            raise InstallError(f"uninstall tool '{name}'", str(e)) from e
    record.remove_tool_record(name)


def uninstall_tools(
    config: InstallConfiguration, record: InstallationRecord, names: Sequence[str]
) -> List[str]:
    """Uninstall several tools; returns the names that failed.

    A failure does not stop the others, failed tools stay in the record.
    """

    failed: List[str] = []
    for name in names:
        try:
            uninstall_tool(config, record, name)
        except InstallError as e:
            logger.error("%s", e)
            failed.append(name)
    return failed


def uninstall_all(config: InstallConfiguration, *, keep_self: bool = False) -> None:
    """Remove the whole toolkit.

    Order: tools, the toolchain (`rustup self uninstall`), environment changes,
    directories, and the installation record last, so an interrupted uninstall
    still shows up as installed.
    """

    record = InstallationRecord.load_from_dir(config.install_dir)

    # Reverse install order: tools may depend on each other's PATH entries.
    failed = uninstall_tools(config, record, list(reversed(record.installed_tools())))
    if failed:
        raise InstallError("uninstall toolkit", f"unable to uninstall: {', '.join(failed)}")

    installer = config.toolchain_installer
    assert installer is not None
    try:
        installer.remove_self(config)
    except RimError as e:
        raise InstallError("uninstall rust toolchain", str(e)) from e
    if record.rust is not None:
        record.remove_rust_record()

    remove_env_config(config)

    for path in (
        config.tools_dir,
        config.cargo_home,
        config.rustup_home,
        config.temp_dir,
        config.install_dir / ToolsetManifest.FILENAME,
        config.install_dir / UpdateCheckerOpt.FILENAME,
    ):
        remove_path(path)

    record.delete()
    logger.info("Toolkit removed from %s", config.install_dir)

    if not keep_self:
        remove_install_dir(config)


def remove_env_config(config: InstallConfiguration) -> None:
    assert config.path_editor is not None
    try:
        config.path_editor.remove(config.cargo_bin)
    except OSError as e:
        logger.warning("Unable to remove %s from PATH: %s", config.cargo_bin, e)
    if not IS_WINDOWS and not config.no_modify_path:
        remove_from_shell_profiles(config.env_script, home_dir())


def remove_install_dir(config: InstallConfiguration) -> None:
    """Remove what is left of the install dir, including this program.

    On Windows a running executable cannot be deleted, it is left for the user.
    """

    if IS_WINDOWS:
        logger.info("Remove '%s' manually to finish the uninstallation", config.install_dir)
        return
    remove_path(config.install_dir)
