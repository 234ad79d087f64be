"""Update checker state (`.updates` in the install root).

    [manager]
    last-run = 2024-01-01T10:30:05   # when the last check happened (UTC)
    timeout = 1440                   # minutes until the next check
    skip = "0.5.0"                   # version the user chose to skip
"""

from __future__ import annotations

import enum
import logging
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import tomli_w

from .errors import RimError

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_CHECK_TIMEOUT_MINUTES = 1440
DEFAULT_UPDATE_CHECK_DURATION = timedelta(minutes=DEFAULT_UPDATE_CHECK_TIMEOUT_MINUTES)
EPOCH = datetime(1970, 1, 1)


def utc_now() -> datetime:
    """Naive UTC timestamp, the form stored in the file."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


class UpdateTarget(str, enum.Enum):
    MANAGER = "manager"
    TOOLKIT = "toolkit"

    def __str__(self) -> str:
        return self.value


@dataclass
class UpdateConf:
    last_run: datetime = EPOCH
    # minutes, None falls back to the default
    timeout: Optional[int] = DEFAULT_UPDATE_CHECK_TIMEOUT_MINUTES
    skip: Optional[str] = None

    def timeout_duration(self) -> timedelta:
        if self.timeout is None:
            return DEFAULT_UPDATE_CHECK_DURATION
        return timedelta(minutes=self.timeout)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpdateConf":
        last_run = data.get("last-run", EPOCH)
        if isinstance(last_run, str):
            try:
                last_run = datetime.fromisoformat(last_run)
            except ValueError as e:
                raise RimError(f"invalid 'last-run' value: {last_run!r}") from e
        if not isinstance(last_run, datetime):
            raise RimError(f"invalid 'last-run' value: {last_run!r}")
        if last_run.tzinfo is not None:
            last_run = last_run.astimezone(timezone.utc).replace(tzinfo=None)
        timeout = data.get("timeout")
        if timeout is not None and (not isinstance(timeout, int) or timeout < 0):
            raise RimError(f"invalid 'timeout' value: {timeout!r}")
        skip = data.get("skip")
        return cls(last_run=last_run, timeout=timeout, skip=str(skip) if skip is not None else None)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"last-run": self.last_run.replace(microsecond=0)}
        if self.timeout is not None:
            out["timeout"] = self.timeout
        if self.skip is not None:
            out["skip"] = self.skip
        return out


@dataclass
class UpdateCheckerOpt:
    """Per-target skip version, check interval and last check time.

    Mutators return `self` so calls can be chained.
    """

    confs: Dict[UpdateTarget, UpdateConf] = field(default_factory=dict)

    FILENAME = ".updates"

    @classmethod
    def from_str(cls, text: str) -> "UpdateCheckerOpt":
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as e:
            raise RimError(f"malformed update checker file: {e}") from e
        confs: Dict[UpdateTarget, UpdateConf] = {}
        for key, value in data.items():
            try:
                target = UpdateTarget(key)
            except ValueError:
                logger.debug("Ignoring unknown update target %r", key)
                continue
            if not isinstance(value, dict):
                raise RimError(f"update checker entry '{key}' must be a table")
            confs[target] = UpdateConf.from_dict(value)
        return cls(confs)

    def to_toml(self) -> str:
        return tomli_w.dumps({str(t): c.to_dict() for t, c in self.confs.items()})

    @classmethod
    def load_from_dir(cls, directory: Path) -> "UpdateCheckerOpt":
        """Load from `directory`, a missing or unreadable file gives the defaults."""

        path = Path(directory) / cls.FILENAME
        if not path.is_file():
            return cls()
        try:
            return cls.from_str(path.read_text(encoding="utf-8"))
        except (OSError, RimError) as e:
            logger.warning("Ignoring invalid update checker file %s: %s", path, e)
            return cls()

    def write_to_dir(self, directory: Path) -> None:
        path = Path(directory) / self.FILENAME
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_toml(), encoding="utf-8")

    def conf(self, target: UpdateTarget) -> UpdateConf:
        return self.confs.setdefault(target, UpdateConf())

    def skip(self, target: UpdateTarget, version: str) -> "UpdateCheckerOpt":
        self.conf(target).skip = version
        return self

    def is_skipped(self, target: UpdateTarget, version: str) -> bool:
        # exact string match, not a version range
        conf = self.confs.get(target)
        return conf is not None and conf.skip is not None and conf.skip == str(version)

    def remind_later(self, target: UpdateTarget, minutes: int) -> "UpdateCheckerOpt":
        conf = self.conf(target)
        conf.timeout = conf.timeout + minutes if conf.timeout is not None else minutes
        return self

    def mark_checked(self, target: UpdateTarget, now: Optional[datetime] = None) -> "UpdateCheckerOpt":
        self.conf(target).last_run = now or utc_now()
        return self

    def duration_until_next_run(self, target: UpdateTarget, now: Optional[datetime] = None) -> timedelta:
        """Time left until `target` should be checked again, zero when due."""

        conf = self.confs.get(target)
        if conf is None:
            return timedelta(0)
        next_run = conf.last_run + conf.timeout_duration()
        now = now or utc_now()
        if next_run > now:
            return timedelta(seconds=int((next_run - now).total_seconds()))
        return timedelta(0)
