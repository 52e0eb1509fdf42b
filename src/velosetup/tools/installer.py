"""
Tool installers.

To add a new way of installing tools:
1. Subclass ToolInstaller
2. Implement install()
3. Pass an instance to ToolRegistry
"""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import aiohttp

from velosetup.errors import IntegrityError, NotFoundError, TransientError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class ToolInstaller(ABC):
    """Fetches a tool into a destination directory."""

    @abstractmethod
    async def install(self, name: str, source_url: Optional[str], dest_dir: Path) -> Path:
        """
        Install a tool.

        Returns:
            Path of the installed file.

        Raises:
            NotFoundError: No source, or the source does not exist.
            TransientError: Network failure; may succeed on retry.
            IntegrityError: Empty or truncated download.
        """
        ...


class DownloadInstaller(ToolInstaller):
    """
    Installs tools from http(s) URLs, ``file://`` URLs or local paths.
    """

    def __init__(self, request_timeout: float = 300.0):
        self.request_timeout = request_timeout

    async def install(self, name: str, source_url: Optional[str], dest_dir: Path) -> Path:
        if not source_url:
            raise NotFoundError(
                f"No download source configured for {name}",
                hint="Register the tool again with a source URL.",
            )

        parsed = urlparse(source_url)
        dest_dir.mkdir(parents=True, exist_ok=True)

        if parsed.scheme in ("http", "https"):
            filename = Path(unquote(parsed.path)).name or name
            dest = dest_dir / filename
            await self._download(source_url, dest)
        elif parsed.scheme in ("file", ""):
            source = Path(unquote(parsed.path) if parsed.scheme == "file" else source_url)
            if not source.is_file():
                raise NotFoundError(f"Tool source not found: {source}")
            dest = dest_dir / source.name
            await asyncio.to_thread(shutil.copy2, source, dest)
        else:
            raise NotFoundError(f"Unsupported tool source scheme: {parsed.scheme}")

        if dest.stat().st_size == 0:
            dest.unlink()
            raise IntegrityError(f"Installed file for {name} is empty")

        logger.info(f"[{name}] Installed to {dest}")
        return dest

    async def _download(self, url: str, dest: Path):
        temp = dest.with_name(dest.name + ".download")
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        logger.info(f"Downloading {url}")

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status >= 500 or response.status == 429:
                        raise TransientError(f"Download returned HTTP {response.status}")
                    if response.status != 200:
                        raise NotFoundError(f"Download returned HTTP {response.status}: {url}")

                    expected = response.content_length
                    written = 0
                    with open(temp, "wb") as f:
                        async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                            f.write(chunk)
                            written += len(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            temp.unlink(missing_ok=True)
            raise TransientError(f"Download interrupted: {e}") from e
        except BaseException:
            temp.unlink(missing_ok=True)
            raise

        if expected is not None and written != expected:
            temp.unlink(missing_ok=True)
            raise IntegrityError(f"Download truncated: got {written} of {expected} bytes")

        temp.replace(dest)
