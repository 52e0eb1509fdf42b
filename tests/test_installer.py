"""Tests for tool installers."""

import pytest
from aiohttp import web

from velosetup.errors import IntegrityError, NotFoundError, TransientError
from velosetup.tools.installer import DownloadInstaller


async def start_file_server(port: int) -> web.AppRunner:
    async def tool(request):
        return web.Response(body=b"capa release archive")

    async def empty(request):
        return web.Response(body=b"")

    async def busy(request):
        return web.Response(status=503)

    app = web.Application()
    app.router.add_get("/files/capa.zip", tool)
    app.router.add_get("/files/empty.zip", empty)
    app.router.add_get("/files/busy.zip", busy)

    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, "127.0.0.1", port).start()
    return runner


class TestLocalSources:
    """Tests for local path and file:// sources."""

    @pytest.mark.asyncio
    async def test_local_path(self, tmp_path):
        source = tmp_path / "yara.bin"
        source.write_bytes(b"yara")

        path = await DownloadInstaller().install("yara", str(source), tmp_path / "dest")
        assert path == tmp_path / "dest" / "yara.bin"
        assert path.read_bytes() == b"yara"

    @pytest.mark.asyncio
    async def test_file_uri(self, tmp_path):
        source = tmp_path / "my tool.bin"
        source.write_bytes(b"tool")

        path = await DownloadInstaller().install("tool", source.as_uri(), tmp_path / "dest")
        assert path.name == "my tool.bin"

    @pytest.mark.asyncio
    async def test_no_source(self, tmp_path):
        with pytest.raises(NotFoundError) as exc_info:
            await DownloadInstaller().install("yara", None, tmp_path / "dest")
        assert exc_info.value.hint

    @pytest.mark.asyncio
    async def test_missing_source(self, tmp_path):
        with pytest.raises(NotFoundError):
            await DownloadInstaller().install("yara", str(tmp_path / "nope"), tmp_path / "dest")

    @pytest.mark.asyncio
    async def test_empty_source(self, tmp_path):
        source = tmp_path / "empty.bin"
        source.write_bytes(b"")

        with pytest.raises(IntegrityError):
            await DownloadInstaller().install("empty", str(source), tmp_path / "dest")
        assert not (tmp_path / "dest" / "empty.bin").exists()

    @pytest.mark.asyncio
    async def test_unsupported_scheme(self, tmp_path):
        with pytest.raises(NotFoundError, match="scheme"):
            await DownloadInstaller().install("yara", "ftp://example.com/yara", tmp_path / "dest")


class TestHttpSources:
    """Tests for http downloads."""

    @pytest.mark.asyncio
    async def test_download(self, tmp_path, free_port):
        port = free_port()
        runner = await start_file_server(port)
        try:
            path = await DownloadInstaller().install(
                "capa", f"http://127.0.0.1:{port}/files/capa.zip", tmp_path / "dest"
            )
        finally:
            await runner.cleanup()

        assert path.name == "capa.zip"
        assert path.read_bytes() == b"capa release archive"
        assert not (tmp_path / "dest" / "capa.zip.download").exists()

    @pytest.mark.asyncio
    async def test_not_found(self, tmp_path, free_port):
        port = free_port()
        runner = await start_file_server(port)
        try:
            with pytest.raises(NotFoundError):
                await DownloadInstaller().install(
                    "capa", f"http://127.0.0.1:{port}/files/missing.zip", tmp_path / "dest"
                )
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, tmp_path, free_port):
        port = free_port()
        runner = await start_file_server(port)
        try:
            with pytest.raises(TransientError):
                await DownloadInstaller().install(
                    "capa", f"http://127.0.0.1:{port}/files/busy.zip", tmp_path / "dest"
                )
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_empty_download(self, tmp_path, free_port):
        port = free_port()
        runner = await start_file_server(port)
        try:
            with pytest.raises(IntegrityError):
                await DownloadInstaller().install(
                    "capa", f"http://127.0.0.1:{port}/files/empty.zip", tmp_path / "dest"
                )
        finally:
            await runner.cleanup()

    @pytest.mark.asyncio
    async def test_unreachable_is_transient(self, tmp_path, free_port):
        with pytest.raises(TransientError):
            await DownloadInstaller().install(
                "capa", f"http://127.0.0.1:{free_port()}/files/capa.zip", tmp_path / "dest"
            )
