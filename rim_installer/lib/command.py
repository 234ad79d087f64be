from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence, Union

from ..errors import CommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str


def _fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def cmd_exists(program: str) -> bool:
    return shutil.which(program) is not None


def run_cmd(
    argv: Sequence[Union[str, Path]],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
) -> CmdResult:
    """Run a command with consistent logging.

    - Always logs the command.
    - Captures stdout/stderr, logging them at debug level.
    - `env` entries are layered on top of the current environment.
    """

    argv_list = [str(a) for a in argv]
    logger.info("CMD %s", _fmt_argv(argv_list))
    if env:
        logger.debug("ENV %s", " ".join(f"{k}={v}" for k, v in env.items()))

    try:
        p = subprocess.run(
            argv_list,
            input=input_text,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=dict(os.environ, **(env or {})),
        )
    except FileNotFoundError as e:
        raise CommandError(argv_list, 127, f"program not found: {argv_list[0]}") from e

    if p.stdout:
        logger.debug("STDOUT %s", p.stdout.strip())
    if p.stderr:
        logger.debug("STDERR %s", p.stderr.strip())

    if check and p.returncode != 0:
        raise CommandError(argv_list, p.returncode, p.stderr)

    return CmdResult(argv=argv_list, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)


def which(program: str) -> Optional[str]:
    return shutil.which(program)
