"""Manager mode: the long-running session behind an interactive front-end.

Installs, uninstalls and updates run in worker threads so the event loop
stays responsive; while one runs the update poller is paused. `AppContext`
methods block on the network, so code running on the loop goes through the
`ManagerSession` coroutines instead.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence

import httpx

from .components import Component
from .errors import InstallError
from .install import InstallConfiguration, install_components, update_toolkit
from .pipeline import PipelineResult, StepCallback
from .poller import UpdateCallback, UpdateCheckBlocker, UpdatePoller
from .toolkit import InstalledToolkitCache, Toolkit, installable_toolkits
from .toolset_manifest import ManifestCache, ToolsetManifest, load_toolset_manifest
from .uninstall import uninstall_all
from .update import UpdateOpt, self_update
from .updates import UpdateCheckerOpt, UpdateTarget

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Process-scoped state shared by the manager's operations.

    Caches fill on first use and are only dropped by an explicit reload.
    """

    install_dir: Path
    insecure: bool = False
    server: Optional[str] = None
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, repr=False)
    manifests: ManifestCache = field(default_factory=ManifestCache, repr=False)
    installed_kit: InstalledToolkitCache = field(default_factory=InstalledToolkitCache, repr=False)
    blocker: UpdateCheckBlocker = field(default_factory=UpdateCheckBlocker, repr=False)
    _selected_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _selected: Optional[ToolsetManifest] = field(default=None, init=False, repr=False)

    def update_opt(self) -> UpdateOpt:
        opt = UpdateOpt(
            self.install_dir,
            insecure=self.insecure,
            transport=self.transport,
            installed_cache=self.installed_kit,
        )
        if self.server:
            opt.server = self.server
        return opt

    def install_config(self, **kwargs: Any) -> InstallConfiguration:
        return InstallConfiguration(self.install_dir, insecure=self.insecure, transport=self.transport, **kwargs)

    def installed_toolkit(self, *, reload: bool = False) -> Optional[Toolkit]:
        return self.installed_kit.get(self.install_dir, reload=reload)

    def available_toolkits(self, *, reload: bool = False) -> List[Toolkit]:
        kwargs: dict = {"insecure": self.insecure, "transport": self.transport}
        if self.server:
            kwargs["server"] = self.server
        return installable_toolkits(self.installed_toolkit(reload=reload), **kwargs)

    def select_toolkit(self, manifest_url: str) -> List[Component]:
        """Load the manifest of a toolkit chosen for install and remember it."""

        manifest = load_toolset_manifest(
            manifest_url,
            self.manifests,
            insecure=self.insecure,
            transport=self.transport,
            temp_root=self.install_dir / "temp",
        )
        components = manifest.current_target_components(False)
        with self._selected_lock:
            self._selected = manifest
        return components

    def selected_manifest(self) -> Optional[ToolsetManifest]:
        with self._selected_lock:
            return self._selected

    def reload(self) -> None:
        self.manifests.clear()
        self.installed_kit.invalidate()
        with self._selected_lock:
            self._selected = None


class ManagerSession:
    def __init__(self, ctx: AppContext, on_update: Optional[UpdateCallback] = None) -> None:
        self.ctx = ctx
        self.poller: Optional[UpdatePoller] = None
        self._poll_task: Optional["asyncio.Task[None]"] = None
        self._on_update = on_update

    def start_poller(self) -> None:
        if self._on_update is None or self._poll_task is not None:
            return
        self.poller = UpdatePoller(self.ctx.update_opt(), self.ctx.blocker, self._on_update)
        self._poll_task = self.poller.start()

    async def close(self) -> None:
        if self.poller is not None:
            self.poller.stop()
        if self._poll_task is not None:
            await self._poll_task
            self._poll_task = None

    async def _run_blocking(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        with self.ctx.blocker.hold():
            try:
                return await asyncio.to_thread(func, *args, **kwargs)
            finally:
                self.ctx.installed_kit.invalidate()

    async def available_toolkits(self, *, reload: bool = False) -> List[Toolkit]:
        return await asyncio.to_thread(self.ctx.available_toolkits, reload=reload)

    async def select_toolkit(self, manifest_url: str) -> List[Component]:
        """Fetch and remember the manifest of the toolkit chosen for install."""

        return await asyncio.to_thread(self.ctx.select_toolkit, manifest_url)

    async def install_selected(
        self, components: Sequence[Component], *, on_step: Optional[StepCallback] = None
    ) -> PipelineResult:
        """Install the selected toolkit over the current one."""

        manifest = self.ctx.selected_manifest()
        if manifest is None:
            raise InstallError("install toolkit", "no toolkit has been selected")
        config = self.ctx.install_config(is_update=True)
        return await self._run_blocking(install_components, config, manifest, components, on_step=on_step)

    async def update_toolkit(
        self, manifest: ToolsetManifest, *, on_step: Optional[StepCallback] = None
    ) -> PipelineResult:
        config = self.ctx.install_config()
        return await self._run_blocking(update_toolkit, config, manifest, on_step=on_step)

    async def uninstall(self, *, keep_self: bool = False) -> None:
        config = self.ctx.install_config()
        await self._run_blocking(uninstall_all, config, keep_self=keep_self)

    async def self_update(self) -> bool:
        # already checked by the poller
        return await self._run_blocking(self_update, self.ctx.update_opt(), skip_check=True)

    def skip_version(self, target: UpdateTarget, version: str) -> None:
        UpdateCheckerOpt.load_from_dir(self.ctx.install_dir).skip(target, version).write_to_dir(
            self.ctx.install_dir
        )

    def remind_later(self, target: UpdateTarget, minutes: int) -> None:
        UpdateCheckerOpt.load_from_dir(self.ctx.install_dir).remind_later(target, minutes).write_to_dir(
            self.ctx.install_dir
        )
