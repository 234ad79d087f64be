"""Background update polling for the manager.

One `UpdatePoller` task runs per process. It sleeps until the earliest of the
manager/toolkit check deadlines, and does nothing while an install, uninstall
or update holds the `UpdateCheckBlocker`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from datetime import timedelta
from typing import Any, Callable, Iterator, Optional

from .update import UpdateOpt, UpdateResult, check_self_update, check_toolkit_update
from .updates import DEFAULT_UPDATE_CHECK_DURATION, UpdateCheckerOpt, UpdateTarget

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[UpdateTarget, UpdateResult[Any]], None]

# how long a blocked poller waits before looking again
BLOCKED_RETRY = timedelta(seconds=30)
MIN_SLEEP = timedelta(seconds=1)


class UpdateCheckBlocker:
    """Process-wide flag pausing update checks. Holders may nest."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holders = 0

    def block(self) -> None:
        with self._lock:
            self._holders += 1

    def unblock(self) -> None:
        with self._lock:
            if self._holders > 0:
                self._holders -= 1

    def is_blocked(self) -> bool:
        with self._lock:
            return self._holders > 0

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        self.block()
        try:
            yield
        finally:
            self.unblock()


class UpdatePoller:
    def __init__(
        self,
        opt: UpdateOpt,
        blocker: UpdateCheckBlocker,
        on_update: UpdateCallback,
        *,
        check_toolkit: bool = True,
        blocked_retry: timedelta = BLOCKED_RETRY,
    ) -> None:
        self.opt = opt
        self.blocker = blocker
        self.on_update = on_update
        self.check_toolkit = check_toolkit
        self.blocked_retry = blocked_retry
        self._stop = asyncio.Event()

    @property
    def targets(self) -> tuple:
        if self.check_toolkit:
            return (UpdateTarget.MANAGER, UpdateTarget.TOOLKIT)
        return (UpdateTarget.MANAGER,)

    def stop(self) -> None:
        self._stop.set()

    async def _sleep(self, duration: timedelta) -> bool:
        """Sleep for `duration`; returns True when stopped meanwhile."""

        try:
            await asyncio.wait_for(self._stop.wait(), timeout=duration.total_seconds())
        except asyncio.TimeoutError:
            return False
        return True

    async def _check(self, target: UpdateTarget) -> None:
        check = check_self_update if target is UpdateTarget.MANAGER else check_toolkit_update
        try:
            result = await asyncio.to_thread(check, self.opt)
        except OSError as e:
            # only persisting last-run can fail here
            logger.error("%s update check failed: %s", target, e)
            return
        if result.update_needed():
            self.on_update(target, result)

    def next_sleep(self) -> timedelta:
        checker = UpdateCheckerOpt.load_from_dir(self.opt.install_dir)
        durations = [checker.duration_until_next_run(t) for t in self.targets]
        return max(min(durations, default=DEFAULT_UPDATE_CHECK_DURATION), MIN_SLEEP)

    async def run_once(self) -> None:
        checker = UpdateCheckerOpt.load_from_dir(self.opt.install_dir)
        for target in self.targets:
            if self.blocker.is_blocked():
                return
            if checker.duration_until_next_run(target) == timedelta(0):
                await self._check(target)

    async def run(self) -> None:
        logger.debug("Update poller started")
        while not self._stop.is_set():
            if self.blocker.is_blocked():
                if await self._sleep(self.blocked_retry):
                    break
                continue
            try:
                await self.run_once()
                duration = self.next_sleep()
            except Exception:
                # keep polling after a failed round
                logger.exception("Update check round failed")
                duration = self.blocked_retry
            if await self._sleep(duration):
                break
        logger.debug("Update poller stopped")

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> "asyncio.Task[None]":
        return (loop or asyncio.get_running_loop()).create_task(self.run())
