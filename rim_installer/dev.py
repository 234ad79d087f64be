"""`rim-dev`: maintainer commands, run from a source checkout."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from .errors import RimError, format_error_chain
from .logging_utils import configure_logging
from .vendor import VendorMode, vendor
from .vendor.toolkits_parser import REGISTRY_FILENAME

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = Path("resources") / REGISTRY_FILENAME


def cmd_vendor(args: argparse.Namespace) -> int:
    mode = VendorMode.REGULAR
    if args.download_only:
        mode = VendorMode.DOWNLOAD_ONLY
    elif args.split_only:
        mode = VendorMode.SPLIT_ONLY
    job = vendor(
        Path(args.registry),
        mode,
        name=args.name,
        target=args.target,
        all_targets=args.all_targets,
        insecure=args.insecure,
    )
    print(f"Vendored {len(job.registry.toolkits)} toolkit(s), {job.downloaded} file(s) downloaded")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="rim-dev")
    p.add_argument("--log", default="rim-dev.log", help="Path to log file")
    p.add_argument("-v", "--verbose", action="store_true")
    sub = p.add_subparsers(dest="command", required=True)

    v = sub.add_parser(
        "vendor",
        help="Split the toolkit registry into toolset manifests and download packages for offline packaging",
    )
    v.add_argument("--registry", default=str(DEFAULT_REGISTRY), help="Path to the toolkit registry")
    v.add_argument("-n", "--name", default=None, help="Only download packages of this toolkit")
    v.add_argument("-t", "--target", default=None, help="Download packages for this target (default: current)")
    v.add_argument("-a", "--all-targets", action="store_true", help="Download packages for every supported target")
    v.add_argument("--insecure", action="store_true", help="Skip TLS certificate verification")
    mode = v.add_mutually_exclusive_group()
    mode.add_argument("--download-only", action="store_true", help="Download packages, leave manifests alone")
    mode.add_argument(
        "--split-only",
        action="store_true",
        help="Write online/offline manifests without downloading anything",
    )
    v.set_defaults(func=cmd_vendor)

    args = p.parse_args(argv)
    configure_logging(log_path=args.log, level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        return args.func(args)
    except (RimError, OSError) as e:
        print(f"error: {args.command}: {format_error_chain(e)}", file=sys.stderr)
        return 1


def run() -> None:
    sys.exit(main())
