import asyncio

import httpx
import pytest

from app.errors import DownloadError, PayloadTooLarge, WatermarkNotFound
from app.sources import WatermarkResolver, download_to
from app.workspace import Workspace


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)


def _download(handler, dest, **kwargs):
    async def scenario():
        async with _client(handler) as client:
            return await download_to("https://example.com/video.mp4", dest, client=client, **kwargs)

    return asyncio.run(scenario())


def test_download_writes_body(tmp_path):
    dest = tmp_path / "video.mp4"
    written = _download(lambda request: httpx.Response(200, content=b"x" * 5000), dest, chunk_size=1024)
    assert written == 5000
    assert dest.read_bytes() == b"x" * 5000


def test_download_does_not_retry_client_errors(tmp_path):
    calls = []

    def handler(request):
        calls.append(request.url)
        return httpx.Response(404)

    with pytest.raises(DownloadError) as exc:
        _download(handler, tmp_path / "video.mp4", max_retries=3)
    assert len(calls) == 1
    assert "404" in exc.value.message
    assert exc.value.status_code == 502
    assert not (tmp_path / "video.mp4").exists()


def test_download_retries_server_errors(tmp_path, monkeypatch):
    calls = []

    async def no_sleep(_seconds):
        return None

    monkeypatch.setattr("app.sources.asyncio.sleep", no_sleep)

    def handler(request):
        calls.append(request.url)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, content=b"ok")

    assert _download(handler, tmp_path / "video.mp4", max_retries=3) == 2
    assert len(calls) == 3


def test_download_connection_error_raises_download_error(tmp_path):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DownloadError) as exc:
        _download(handler, tmp_path / "video.mp4", max_retries=1)
    assert "connection refused" in exc.value.message


def test_download_enforces_size_limit(tmp_path):
    with pytest.raises(PayloadTooLarge):
        _download(lambda request: httpx.Response(200, content=b"x" * 2048), tmp_path / "video.mp4", max_bytes=1024)
    assert not (tmp_path / "video.mp4").exists()


def test_resolver_downloads_remote_watermark_into_workspace(tmp_path):
    resolver = WatermarkResolver(url="https://example.com/logo.png", bundled=tmp_path / "missing.png", max_retries=1)
    workspace = Workspace.create(tmp_path / "work")

    async def scenario():
        async with _client(lambda request: httpx.Response(200, content=b"png")) as client:
            return await resolver.resolve(workspace, client)

    path = asyncio.run(scenario())
    assert path == workspace.path("wm.png")
    assert path.read_bytes() == b"png"


def test_resolver_prefers_local_path_over_bundled(tmp_path):
    local = tmp_path / "brand.png"
    local.write_bytes(b"local")
    bundled = tmp_path / "bundled.png"
    bundled.write_bytes(b"bundled")
    workspace = Workspace.create(tmp_path / "work")

    async def scenario(resolver):
        async with _client(lambda request: httpx.Response(500)) as client:
            return await resolver.resolve(workspace, client)

    assert asyncio.run(scenario(WatermarkResolver(path=local, bundled=bundled))) == local
    assert asyncio.run(scenario(WatermarkResolver(path=tmp_path / "gone.png", bundled=bundled))) == bundled
    with pytest.raises(WatermarkNotFound):
        asyncio.run(scenario(WatermarkResolver(bundled=tmp_path / "gone.png")))
