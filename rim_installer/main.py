from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from . import __version__
from .components import Component
from .errors import InstallError, RimError, format_error_chain
from .fingerprint import InstallationRecord, get_installed_dir
from .install import InstallConfiguration, install_components, select_components, update_toolkit
from .lib.env import MODE
from .logging_utils import configure_logging, default_log_path
from .settings import InstallSettings
from .toolkit import Toolkit, installable_toolkits
from .toolset_manifest import ManifestCache, ToolsetManifest, load_toolset_manifest
from .uninstall import uninstall_all, uninstall_tools
from .update import UpdateOpt, check_self_update, check_toolkit_update, restart, self_update
from .updates import UpdateCheckerOpt, UpdateTarget

logger = logging.getLogger(__name__)


def is_manager_mode(program: Optional[str] = None) -> bool:
    """`MODE=manager`, or a program name containing "manager", selects manager mode."""

    mode = os.environ.get(MODE)
    if mode:
        return mode.lower() == "manager"
    name = Path(program or sys.argv[0] or "").name.lower()
    return "manager" in name


def _print_step(idx: int, total: int, step_id: str) -> None:
    print(f"[{idx + 1}/{total}] {step_id}")


def _install_dir(args: argparse.Namespace) -> Path:
    if getattr(args, "install_dir", None):
        return Path(args.install_dir)
    return get_installed_dir()


def _settings(args: argparse.Namespace) -> InstallSettings:
    settings = InstallSettings.load(args.settings)
    if args.prefix:
        settings.install_dir = Path(args.prefix).expanduser()
    if args.manifest:
        settings.manifest = args.manifest
    if args.component:
        settings.components = list(args.component)
    if args.rustup_dist_server:
        settings.rustup_dist_server = args.rustup_dist_server
    if args.rustup_update_root:
        settings.rustup_update_root = args.rustup_update_root
    if args.registry_name and args.registry_url:
        settings.cargo_registry_name = args.registry_name
        settings.cargo_registry_url = args.registry_url
    settings.insecure = settings.insecure or args.insecure
    settings.no_modify_path = settings.no_modify_path or args.no_modify_path
    return settings


def cmd_install(args: argparse.Namespace) -> int:
    settings = _settings(args)
    manifest = load_toolset_manifest(settings.manifest, ManifestCache(), insecure=settings.insecure)
    config = InstallConfiguration.from_settings(settings)
    components = select_components(manifest, settings.components, target=config.target)

    logger.info("Installing %s into %s", manifest.name or "toolkit", config.install_dir)
    for comp in components:
        print(f"  {comp.name} {comp.version or ''}".rstrip())
    if not args.yes and sys.stdin.isatty():
        answer = input("Continue? [Y/n] ").strip().lower()
        if answer not in ("", "y", "yes"):
            print("Cancelled")
            return 0

    install_components(config, manifest, components, on_step=_print_step)
    print(f"Installation complete: {config.install_dir}")
    return 0


def cmd_uninstall(args: argparse.Namespace) -> int:
    install_dir = _install_dir(args)
    config = InstallConfiguration(install_dir, insecure=args.insecure)
    if args.tool:
        record = InstallationRecord.load_from_dir(install_dir)
        failed = uninstall_tools(config, record, args.tool)
        if failed:
            print(f"Failed to uninstall: {', '.join(failed)}", file=sys.stderr)
            return 1
        return 0
    uninstall_all(config, keep_self=args.keep_self)
    print("Uninstallation complete")
    return 0


def collect_components(install_dir: Optional[Path], *, installed_only: bool) -> List[Component]:
    if installed_only:
        if install_dir is None:
            return []
        toolkit = Toolkit.from_installation(install_dir)
        return toolkit.components if toolkit else []

    manifest = (
        ToolsetManifest.load_from_install_dir(install_dir)
        if install_dir is not None and (install_dir / ToolsetManifest.FILENAME).is_file()
        else load_toolset_manifest(None)
    )
    recorded = (
        set(InstallationRecord.load_from_dir(install_dir).tools)
        if install_dir is not None and InstallationRecord.exists(install_dir)
        else set()
    )
    components = manifest.current_target_components(False)
    for comp in components:
        comp.installed = comp.installed or comp.name in recorded
    return components


def list_components(install_dir: Optional[Path], *, installed_only: bool, verbose: bool) -> List[str]:
    lines = []
    for comp in collect_components(install_dir, installed_only=installed_only):
        line = comp.name
        if verbose and comp.version:
            line += f" {comp.version}"
        if comp.installed and not installed_only:
            line += " (installed)"
        lines.append(line)
    return lines


def collect_toolkits(
    install_dir: Optional[Path], *, installed_only: bool, insecure: bool
) -> List[Tuple[Toolkit, bool]]:
    """Toolkits paired with whether they are the installed one."""

    installed = Toolkit.from_installation(install_dir) if install_dir is not None else None
    entries = [(installed, True)] if installed else []
    if not installed_only:
        entries += [(tk, False) for tk in installable_toolkits(installed, insecure=insecure)]
    return entries


def list_toolkits(install_dir: Optional[Path], *, installed_only: bool, insecure: bool) -> List[str]:
    entries = collect_toolkits(install_dir, installed_only=installed_only, insecure=insecure)
    return [
        f"{tk.name} {tk.version}" + (" (installed)" if is_installed and not installed_only else "")
        for tk, is_installed in entries
    ]


def cmd_list(args: argparse.Namespace) -> int:
    try:
        install_dir: Optional[Path] = _install_dir(args)
    except RimError:
        install_dir = None

    if args.json:
        # same shape the interactive front-end consumes
        if args.toolkits:
            entries = collect_toolkits(install_dir, installed_only=args.installed, insecure=args.insecure)
            data: List[Dict[str, Any]] = [dict(tk.to_dict(), installed=inst) for tk, inst in entries]
        else:
            data = [c.to_dict() for c in collect_components(install_dir, installed_only=args.installed)]
        print(json.dumps(data, indent=2))
        return 0

    if args.toolkits:
        lines = list_toolkits(install_dir, installed_only=args.installed, insecure=args.insecure)
    else:
        lines = list_components(install_dir, installed_only=args.installed, verbose=args.verbose)
    for line in lines:
        print(line)
    return 0


def cmd_update(args: argparse.Namespace) -> int:
    install_dir = _install_dir(args)
    opt = UpdateOpt(install_dir, insecure=args.insecure)

    if not args.toolkit_only:
        if self_update(opt):
            print("Manager updated, restarting")
            restart()
            return 0
        print(f"Manager {__version__} is up to date")

    if args.manager_only:
        return 0

    if args.manifest:
        manifest_src: Optional[str] = args.manifest
    else:
        result = check_toolkit_update(opt)
        if not result.update_needed():
            print("Toolkit is up to date")
            return 0
        assert result.latest is not None
        if result.latest.url is None:
            raise InstallError("update toolkit", f"no manifest url for version {result.latest.version}")
        manifest_src = result.latest.url
        print(f"Updating toolkit {result.current.version if result.current else ''} -> {result.latest.version}")
    manifest = load_toolset_manifest(manifest_src, ManifestCache(), insecure=args.insecure)
    config = InstallConfiguration(install_dir, insecure=args.insecure)
    update_toolkit(config, manifest, on_step=_print_step)
    print("Toolkit updated")
    return 0


def cmd_check_update(args: argparse.Namespace) -> int:
    opt = UpdateOpt(_install_dir(args), insecure=args.insecure)
    manager = check_self_update(opt)
    toolkit = check_toolkit_update(opt)
    for label, result in (("manager", manager), ("toolkit", toolkit)):
        if result.update_needed():
            latest = getattr(result.latest, "version", result.latest)
            print(f"{label}: {latest} available")
        else:
            print(f"{label}: {result.kind.value}")
    return 0


def cmd_skip(args: argparse.Namespace) -> int:
    install_dir = _install_dir(args)
    UpdateCheckerOpt.load_from_dir(install_dir).skip(UpdateTarget(args.target), args.version).write_to_dir(
        install_dir
    )
    print(f"{args.target} version {args.version} will not be offered again")
    return 0


def cmd_remind_later(args: argparse.Namespace) -> int:
    install_dir = _install_dir(args)
    UpdateCheckerOpt.load_from_dir(install_dir).remind_later(
        UpdateTarget(args.target), args.minutes
    ).write_to_dir(install_dir)
    return 0


def build_parser(manager: bool) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rim-manager" if manager else "rim")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--log", default=None, help="Path to log file")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    p.add_argument("-q", "--quiet", action="store_true", help="Only print errors")
    p.add_argument("--insecure", action="store_true", help="Skip TLS certificate verification")
    sub = p.add_subparsers(dest="command")

    install = sub.add_parser("install", help="Install a toolkit")
    install.add_argument("--prefix", default=None, help="Installation directory")
    install.add_argument("--settings", default=None, help="Install settings file (json|yaml)")
    install.add_argument("--manifest", default=None, help="Toolset manifest path or URL")
    install.add_argument("--component", action="append", default=[], help="Component to install (repeatable)")
    install.add_argument("--rustup-dist-server", default=None)
    install.add_argument("--rustup-update-root", default=None)
    install.add_argument("--registry-name", default=None, help="Cargo registry replacing crates.io")
    install.add_argument("--registry-url", default=None)
    install.add_argument("--no-modify-path", action="store_true", help="Leave PATH and shell profiles alone")
    install.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    install.set_defaults(func=cmd_install)

    def with_install_dir(sp: argparse.ArgumentParser) -> argparse.ArgumentParser:
        sp.add_argument("--install-dir", default=None, help="Installation to manage (default: where this program lives)")
        return sp

    uninstall = with_install_dir(sub.add_parser("uninstall", help="Uninstall tools or the whole toolkit"))
    uninstall.add_argument("--tool", action="append", default=[], help="Only uninstall this tool (repeatable)")
    uninstall.add_argument("--keep-self", action="store_true", help="Keep the manager and its directory")
    uninstall.set_defaults(func=cmd_uninstall)

    lst = with_install_dir(sub.add_parser("list", help="List components or toolkits"))
    lst.add_argument("--installed", action="store_true", help="Only show what is installed")
    lst.add_argument("--toolkits", action="store_true", help="List toolkits instead of components")
    lst.add_argument("--json", action="store_true", help="Print JSON records instead of text")
    lst.set_defaults(func=cmd_list)

    update = with_install_dir(sub.add_parser("update", help="Update the manager and the toolkit"))
    only = update.add_mutually_exclusive_group()
    only.add_argument("--manager-only", action="store_true")
    only.add_argument("--toolkit-only", action="store_true")
    update.add_argument("--manifest", default=None, help="Update to this toolset manifest instead of the latest")
    update.set_defaults(func=cmd_update)

    check = with_install_dir(sub.add_parser("check-update", help="Check for updates"))
    check.set_defaults(func=cmd_check_update)

    skip = with_install_dir(sub.add_parser("skip", help="Never offer this version again"))
    skip.add_argument("target", choices=[t.value for t in UpdateTarget])
    skip.add_argument("version")
    skip.set_defaults(func=cmd_skip)

    remind = with_install_dir(sub.add_parser("remind-later", help="Postpone the next update check"))
    remind.add_argument("target", choices=[t.value for t in UpdateTarget])
    remind.add_argument("minutes", type=int)
    remind.set_defaults(func=cmd_remind_later)
    return p


def main(argv: Optional[list[str]] = None) -> int:
    manager = is_manager_mode()
    p = build_parser(manager)
    args = p.parse_args(argv)

    if args.command is None:
        if manager:
            p.print_help()
            return 0
        args = p.parse_args(list(argv if argv is not None else sys.argv[1:]) + ["install"])

    install_dir: Optional[Path] = None
    if manager:
        try:
            install_dir = _install_dir(args)
        except RimError:
            install_dir = None
    level = logging.DEBUG if args.verbose else logging.ERROR if args.quiet else logging.INFO
    configure_logging(log_path=args.log or default_log_path(install_dir), level=level)

    try:
        return args.func(args)
    except (RimError, OSError, ValueError) as e:
        logger.debug("%s failed", args.command, exc_info=True)
        print(f"error: {args.command}: {format_error_chain(e)}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return 130


def run() -> None:
    sys.exit(main())
