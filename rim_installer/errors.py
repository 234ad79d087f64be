from __future__ import annotations

from typing import Optional


class RimError(RuntimeError):
    """Base class of every error raised by this package."""


class ManifestError(RimError, ValueError):
    """Malformed or incomplete toolset manifest / registry file."""


class ClassifyError(RimError):
    """A tool source does not match any installable shape."""


class DownloadError(RimError):
    pass


class CommandError(RimError):
    def __init__(self, argv: list[str], returncode: int, stderr: str = "") -> None:
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr
        detail = f"\n{stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"Command failed ({returncode}): {' '.join(argv)}{detail}")


class InstallationRecordError(RimError):
    """The installation record (fingerprint) is missing or inconsistent."""


class InstallError(RimError):
    """Failure of a single install/uninstall/update operation.

    `operation` names what was being done, the cause is chained via `__cause__`.
    """

    def __init__(self, operation: str, message: Optional[str] = None) -> None:
        self.operation = operation
        super().__init__(f"{operation}: {message}" if message else operation)


def format_error_chain(exc: BaseException) -> str:
    """Render an exception and its `__cause__` chain, one cause per line."""

    lines = [str(exc) or type(exc).__name__]
    seen = {id(exc)}
    cur = exc.__cause__ or exc.__context__
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        lines.append(f"  caused by: {cur or type(cur).__name__}")
        cur = cur.__cause__ or cur.__context__
    return "\n".join(lines)
