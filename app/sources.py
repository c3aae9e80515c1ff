import asyncio
from pathlib import Path
from typing import Optional

import httpx

from .errors import DownloadError, PayloadTooLarge, ServiceError, WatermarkNotFound
from .log import flush_logs, logger
from .workspace import Workspace, safe_unlink


def make_async_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(follow_redirects=True)


async def download_to(
    url: str,
    dest: Path,
    *,
    client: httpx.AsyncClient,
    max_bytes: Optional[int] = None,
    timeout: float = 120,
    max_retries: int = 3,
    chunk_size: int = 1024 * 1024,
) -> int:
    """Download ``url`` into ``dest`` with retries; return the number of bytes written."""

    dest.parent.mkdir(parents=True, exist_ok=True)
    last_error: Optional[Exception] = None
    for attempt in range(max_retries):
        downloaded = 0
        try:
            async with client.stream("GET", url, timeout=timeout) as response:
                response.raise_for_status()
                declared = response.headers.get("content-length")
                if max_bytes is not None and declared and declared.isdigit() and int(declared) > max_bytes:
                    raise PayloadTooLarge(f"Remote file exceeds {max_bytes} bytes")
                with dest.open("wb") as handle:
                    async for chunk in response.aiter_bytes(chunk_size):
                        if not chunk:
                            continue
                        downloaded += len(chunk)
                        if max_bytes is not None and downloaded > max_bytes:
                            raise PayloadTooLarge(f"Remote file exceeds {max_bytes} bytes")
                        handle.write(chunk)
            logger.info("Download complete: %.1fMB - %s", downloaded / 1024 / 1024, url)
            return downloaded
        except ServiceError:
            safe_unlink(dest)
            raise
        except httpx.HTTPStatusError as exc:
            safe_unlink(dest)
            last_error = exc
            # Client errors will not improve on retry
            if exc.response.status_code < 500:
                break
        except (httpx.HTTPError, OSError) as exc:
            safe_unlink(dest)
            last_error = exc
        if attempt < max_retries - 1:
            wait_time = 2**attempt
            logger.warning(
                "Download failed (attempt %d/%d): %s. Retrying in %s seconds...",
                attempt + 1,
                max_retries,
                last_error,
                wait_time,
            )
            await asyncio.sleep(wait_time)

    logger.error("Download failed after %d attempts: %s", max_retries, last_error)
    flush_logs()
    if isinstance(last_error, httpx.HTTPStatusError):
        raise DownloadError(f"Failed to fetch {url}: {last_error.response.status_code}") from last_error
    raise DownloadError(f"Failed to fetch {url}: {last_error}") from last_error


class WatermarkResolver:
    """Resolve the overlay image: remote URL, then local path, then the bundled asset.

    A remote watermark is fetched into the caller's workspace on every call and
    goes away with that workspace; nothing is cached across requests.
    """

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        path: Optional[Path] = None,
        bundled: Optional[Path] = None,
        timeout: float = 60,
        max_retries: int = 3,
    ) -> None:
        self.url = url
        self.path = path
        self.bundled = bundled
        self.timeout = timeout
        self.max_retries = max_retries

    async def resolve(self, workspace: Workspace, client: httpx.AsyncClient) -> Path:
        if self.url:
            dest = workspace.path("wm.png")
            await download_to(
                self.url,
                dest,
                client=client,
                timeout=self.timeout,
                max_retries=self.max_retries,
            )
            return dest
        if self.path is not None and self.path.is_file():
            return self.path
        if self.bundled is not None and self.bundled.is_file():
            return self.bundled
        raise WatermarkNotFound("Watermark not found. Set WATERMARK_URL or WATERMARK_PATH, or add assets/logo.png")
