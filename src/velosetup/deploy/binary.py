"""
Binary provider - resolves a runnable server binary.

Downloads the latest release from GitHub, or validates an existing path.
Failures are classified so the orchestrator can decide whether to retry.
"""

import asyncio
import hashlib
import logging
import os
import platform
import stat
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiohttp

from velosetup.deploy.plan import BinarySource
from velosetup.errors import (
    ConfigError,
    IntegrityError,
    NotFoundError,
    TransientError,
)

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
DEFAULT_REPO = "Velocidex/velociraptor"
USER_AGENT = "velosetup"
CHUNK_SIZE = 64 * 1024
MIN_BINARY_SIZE = 1024 * 1024


@dataclass
class BinaryRef:
    """A resolved, executable server binary."""
    path: Path
    source: BinarySource
    size: int
    sha256: str

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "source": self.source.value,
            "size": self.size,
            "sha256": self.sha256,
        }


def platform_tag() -> str:
    """Release asset tag for this host, e.g. ``linux-amd64``."""
    system = sys.platform
    if system.startswith("linux"):
        os_name = "linux"
    elif system == "darwin":
        os_name = "darwin"
    elif system == "win32":
        os_name = "windows"
    else:
        os_name = system

    machine = platform.machine().lower()
    arch = "arm64" if machine in ("arm64", "aarch64") else "amd64"
    return f"{os_name}-{arch}"


def binary_name() -> str:
    return "velociraptor.exe" if sys.platform == "win32" else "velociraptor"


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class BinaryProvider:
    """
    Resolves the server binary for a deployment.

    For downloads the provider picks the release asset matching this host's
    platform tag and writes it into ``install_path``.
    """

    def __init__(
        self,
        install_path: Path,
        repo: str = DEFAULT_REPO,
        min_size: int = MIN_BINARY_SIZE,
        api_url: str = GITHUB_API_URL,
        request_timeout: float = 300.0,
    ):
        self.install_path = Path(install_path)
        self.repo = repo
        self.min_size = min_size
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout

    @property
    def target_path(self) -> Path:
        return self.install_path / binary_name()

    async def resolve(self, source: BinarySource, path: Optional[Path] = None) -> BinaryRef:
        """
        Resolve a binary from the given source.

        Raises:
            TransientError: Network failure during download (retryable).
            IntegrityError: Download truncated or undersized.
            NotFoundError: Path missing/not executable, or no matching asset.
            ConfigError: Unsupported source.
        """
        source = BinarySource(source)

        if source == BinarySource.DOWNLOAD:
            if self._usable(self.target_path):
                logger.info(f"Using existing binary at {self.target_path}")
                return self._ref(self.target_path, source)
            await self.download()
            return self._ref(self.target_path, source)

        if source in (BinarySource.EXISTING, BinarySource.CUSTOM_PATH):
            if path is None:
                raise NotFoundError(f"No binary path given for source '{source.value}'")
            path = Path(path).expanduser()
            if not path.exists():
                raise NotFoundError(f"Binary not found at {path}")
            if not _is_executable(path):
                raise NotFoundError(
                    f"Binary at {path} is not an executable file",
                    hint=f"Run: chmod +x {path}",
                )
            return self._ref(path, source)

        raise ConfigError(f"Unsupported binary source: {source.value}")

    def _usable(self, path: Path) -> bool:
        return _is_executable(path) and path.stat().st_size >= self.min_size

    def _ref(self, path: Path, source: BinarySource) -> BinaryRef:
        size = path.stat().st_size
        if size < self.min_size:
            raise IntegrityError(
                f"Binary at {path} is {size} bytes, below the {self.min_size} byte minimum"
            )
        return BinaryRef(path=path, source=source, size=size, sha256=_sha256(path))

    async def latest_asset_url(self, session: aiohttp.ClientSession) -> str:
        """Find the download URL of the release asset for this platform."""
        url = f"{self.api_url}/repos/{self.repo}/releases/latest"
        logger.info(f"Querying latest release: {url}")

        async with session.get(url) as response:
            if response.status == 404:
                raise NotFoundError(f"No releases found for {self.repo}")
            if response.status >= 500 or response.status == 429:
                raise TransientError(f"Release API returned HTTP {response.status}")
            if response.status != 200:
                error_text = await response.text()
                raise NotFoundError(
                    f"Release API returned HTTP {response.status}: {error_text[:200]}"
                )
            release = await response.json()

        tag = platform_tag()
        for asset in release.get("assets", []):
            name = asset.get("name", "")
            # Skip signatures and checksum files published alongside binaries
            if tag in name and not name.endswith((".sig", ".sha256", ".asc")):
                logger.info(f"Selected asset {name} from release {release.get('tag_name')}")
                return asset["browser_download_url"]

        raise NotFoundError(f"No {tag} binary in the latest {self.repo} release")

    async def download(self) -> Path:
        """Download the binary into ``install_path``."""
        self.install_path.mkdir(parents=True, exist_ok=True)
        temp_path = self.install_path / f"{binary_name()}.download"
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)

        try:
            async with aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": USER_AGENT},
            ) as session:
                download_url = await self.latest_asset_url(session)
                await self._fetch(session, download_url, temp_path)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            temp_path.unlink(missing_ok=True)
            raise TransientError(f"Download interrupted: {e}") from e
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        size = temp_path.stat().st_size
        if size < self.min_size:
            temp_path.unlink(missing_ok=True)
            raise IntegrityError(
                f"Downloaded binary is {size} bytes, below the {self.min_size} byte minimum"
            )

        temp_path.chmod(temp_path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        os.replace(temp_path, self.target_path)
        logger.info(f"Installed binary to {self.target_path} ({size} bytes)")
        return self.target_path

    async def _fetch(self, session: aiohttp.ClientSession, url: str, dest: Path):
        logger.info(f"Downloading {url}")
        async with session.get(url) as response:
            if response.status >= 500 or response.status == 429:
                raise TransientError(f"Download returned HTTP {response.status}")
            if response.status != 200:
                raise NotFoundError(f"Download returned HTTP {response.status}")

            expected = response.content_length
            written = 0
            with open(dest, "wb") as f:
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    f.write(chunk)
                    written += len(chunk)

        if expected is not None and written != expected:
            raise IntegrityError(f"Download truncated: got {written} of {expected} bytes")
