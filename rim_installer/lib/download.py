from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Optional
from urllib.parse import urlsplit
from urllib.request import url2pathname

import httpx

from .. import __version__
from ..errors import DownloadError

if TYPE_CHECKING:
    from ..toolset_manifest import Proxy

logger = logging.getLogger(__name__)

# (downloaded_bytes, total_bytes or None when the server did not say)
ProgressCallback = Callable[[int, Optional[int]], None]

USER_AGENT = f"rim/{__version__}"
CONNECT_TIMEOUT = 30.0
RETRIES = 3
# seconds, multiplied by the attempt number
RETRY_DELAY = 1.0


def url_join(root: str, path: str) -> str:
    """Join `path` onto `root`, always treating `root` as a directory."""

    return f"{root.rstrip('/')}/{path.lstrip('/')}"


def is_file_url(url: str) -> bool:
    return urlsplit(url).scheme == "file"


def file_url_to_path(url: str) -> Path:
    parts = urlsplit(url)
    if parts.scheme != "file":
        raise ValueError(f"not a file url: {url}")
    return Path(url2pathname(parts.path))


@dataclass
class DownloadOpt:
    """Options of a single download or text read.

    `transport` replaces the network stack entirely (used by tests with
    `httpx.MockTransport`), proxy settings are ignored when it is set.
    """

    name: str
    insecure: bool = False
    proxy: Optional["Proxy"] = None
    resume: bool = True
    retries: int = RETRIES
    progress: Optional[ProgressCallback] = None
    transport: Optional[httpx.AsyncBaseTransport] = None
    timeout: float = 300.0

    def client(self) -> httpx.AsyncClient:
        kwargs: Dict[str, object] = {
            "headers": {"User-Agent": USER_AGENT},
            "timeout": httpx.Timeout(self.timeout, connect=CONNECT_TIMEOUT),
            "verify": not self.insecure,
            "follow_redirects": True,
        }
        if self.transport is not None:
            kwargs["transport"] = self.transport
        elif self.proxy is not None:
            mounts = self.proxy.to_mounts(verify=not self.insecure)
            if mounts:
                kwargs["mounts"] = mounts
                kwargs["trust_env"] = False
        return httpx.AsyncClient(**kwargs)  # type: ignore[arg-type]

    async def read(self, url: str) -> str:
        """Fetch `url` as text. `file://` urls are read from disk."""

        if is_file_url(url):
            path = file_url_to_path(url)
            try:
                return path.read_text(encoding="utf-8")
            except OSError as e:
                raise DownloadError(f"unable to read {self.name} located in '{path}'") from e

        if self.insecure:
            logger.warning("Certificate verification is disabled for %s", url)

        try:
            async with self.client() as client:
                resp = await client.get(url)
        except httpx.HTTPError as e:
            raise DownloadError(f"failed to receive server response from '{url}'") from e

        if not resp.is_success:
            raise DownloadError(
                f"unable to get text content of url '{url}': server responded with error {resp.status_code}"
            )
        return resp.text

    async def download(self, url: str, dest: Path) -> None:
        """Stream `url` into `dest`, reporting progress after every chunk.

        Data goes to `<dest>.part` first and is moved into place once complete,
        so `dest` never holds a truncated file. A transport failure mid-stream
        is retried up to `retries` times, continuing from the size of the
        `.part` file when `resume` is set. A `.part` file left by an earlier
        failed run is continued the same way.
        """

        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + ".part")
        if not self.resume:
            part.unlink(missing_ok=True)

        if is_file_url(url):
            src = file_url_to_path(url)
            try:
                shutil.copyfile(src, part)
            except OSError as e:
                raise DownloadError(f"unable to copy {self.name} from '{src}'") from e
            os.replace(part, dest)
            return

        if self.insecure:
            logger.warning("Certificate verification is disabled for %s", url)

        logger.info("Downloading %s from %s", self.name, url)
        attempt = 0
        try:
            async with self.client() as client:
                while True:
                    offset = part.stat().st_size if self.resume and part.is_file() else 0
                    try:
                        await self._stream(client, url, part, offset)
                        break
                    except httpx.TransportError as e:
                        attempt += 1
                        if attempt > self.retries:
                            raise
                        logger.warning(
                            "Download of %s interrupted (%s), retrying (%d/%d)", self.name, e, attempt, self.retries
                        )
                        await asyncio.sleep(RETRY_DELAY * attempt)
        except httpx.HTTPError as e:
            raise DownloadError(f"failed to download {self.name} from '{url}'") from e
        os.replace(part, dest)
        logger.info("'%s' successfully downloaded", self.name)

    async def _stream(self, client: httpx.AsyncClient, url: str, part: Path, offset: int) -> None:
        headers = {"Range": f"bytes={offset}-"} if offset else {}
        async with client.stream("GET", url, headers=headers) as resp:
            if resp.status_code == 416:
                logger.info("Download range not satisfiable, retrying without ranges header")
                await resp.aclose()
                await self._stream(client, url, part, 0)
                return
            if not resp.is_success:
                raise DownloadError(
                    f"server returns error when attempting download from '{url}': {resp.status_code}"
                )
            # A 200 to a ranged request means the server sent the whole file.
            if offset and resp.status_code != 206:
                offset = 0

            length = resp.headers.get("Content-Length")
            total = int(length) + offset if length is not None else None
            downloaded = offset
            with part.open("ab" if offset else "wb") as f:
                async for chunk in resp.aiter_bytes():
                    f.write(chunk)
                    downloaded += len(chunk)
                    if self.progress is not None:
                        self.progress(downloaded if total is None else min(downloaded, total), total)

    def blocking_download(self, url: str, dest: Path) -> None:
        """Like `download`, but blocks the calling thread until finished."""

        asyncio.run(self.download(url, dest))

    def blocking_read(self, url: str) -> str:
        return asyncio.run(self.read(url))
