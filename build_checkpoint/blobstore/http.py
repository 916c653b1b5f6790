"""HTTP client for a remote blob server.

Provides streaming uploads and downloads against the endpoints served by
build_checkpoint.blobstore.server.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import aiohttp

from build_checkpoint.exceptions import BlobNotFoundError, TransferFailure
from build_checkpoint.logging import get_logger
from build_checkpoint.naming import validate_blob_name

from .base import BlobStore

log = get_logger(source=__name__)

CHUNK_SIZE = 1024 * 1024  # 1MB chunks


async def _error_text(resp: aiohttp.ClientResponse) -> str:
    try:
        data = await resp.json()
        return data.get("error", f"status {resp.status}")
    except (aiohttp.ContentTypeError, ValueError):
        return f"status {resp.status}"


class HttpBlobStore(BlobStore):
    """Blob store client speaking to a BlobServer over HTTP."""

    def __init__(self, base_url: str, token: str | None = None, timeout_seconds: int = 600):
        """Initialize the client.

        Args:
            base_url: Server root, e.g. http://cache-host:8765
            token: Bearer token, if the server requires one
            timeout_seconds: Total timeout for a single request
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _url(self, name: str) -> str:
        return f"{self.base_url}/blobs/{validate_blob_name(name)}"

    def _headers(self) -> dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def upload(self, name: str, local_path: Path) -> None:
        asyncio.run(self.upload_async(name, Path(local_path)))

    def download(self, name: str, destination_dir: Path) -> Path:
        return asyncio.run(self.download_async(name, Path(destination_dir)))

    def delete(self, name: str) -> None:
        asyncio.run(self.delete_async(name))

    def exists(self, name: str) -> bool:
        return asyncio.run(self.exists_async(name))

    async def upload_async(self, name: str, local_path: Path) -> None:
        url = self._url(name)
        file_size = local_path.stat().st_size

        async def file_sender():
            """Generator for chunked file upload."""
            bytes_sent = 0
            with open(local_path, "rb") as f:
                while True:
                    chunk = f.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk
                    bytes_sent += len(chunk)
                    log.bind(tags=["chunk"]).trace(f"{name}: sent {bytes_sent}/{file_size} bytes")

        headers = self._headers()
        headers["Content-Type"] = "application/octet-stream"

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.put(url, data=file_sender(), headers=headers) as resp:
                    if resp.status != 200:
                        raise TransferFailure(
                            f"Upload of {name} failed: {await _error_text(resp)}", blob_name=name
                        )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.error(f"Network error uploading {name}: {e}")
                raise TransferFailure(f"Network error uploading {name}: {e}", blob_name=name) from e
        log.debug(f"Uploaded {name} ({file_size} bytes)")

    async def download_async(self, name: str, destination_dir: Path) -> Path:
        url = self._url(name)
        destination_dir.mkdir(parents=True, exist_ok=True)
        destination = destination_dir / name
        partial = destination_dir / f".{name}.partial"

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.get(url, headers=self._headers()) as resp:
                    if resp.status == 404:
                        raise BlobNotFoundError(name)
                    if resp.status != 200:
                        raise TransferFailure(
                            f"Download of {name} failed: {await _error_text(resp)}", blob_name=name
                        )
                    with open(partial, "wb") as f:
                        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                            f.write(chunk)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                partial.unlink(missing_ok=True)
                log.error(f"Network error downloading {name}: {e}")
                raise TransferFailure(f"Network error downloading {name}: {e}", blob_name=name) from e
            except BaseException:
                partial.unlink(missing_ok=True)
                raise

        os.replace(partial, destination)
        return destination

    async def delete_async(self, name: str) -> None:
        url = self._url(name)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.delete(url, headers=self._headers()) as resp:
                    if resp.status not in (200, 404):
                        raise TransferFailure(
                            f"Delete of {name} failed: {await _error_text(resp)}", blob_name=name
                        )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise TransferFailure(f"Network error deleting {name}: {e}", blob_name=name) from e

    async def exists_async(self, name: str) -> bool:
        url = self._url(name)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.head(url, headers=self._headers()) as resp:
                    if resp.status == 404:
                        return False
                    if resp.status != 200:
                        raise TransferFailure(f"Lookup of {name} failed: status {resp.status}", blob_name=name)
                    return True
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise TransferFailure(f"Network error looking up {name}: {e}", blob_name=name) from e

    async def check_status(self) -> dict:
        """Check server status.

        Returns:
            Server status dictionary
        """
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.get(f"{self.base_url}/status", headers=self._headers()) as resp:
                    if resp.status == 200:
                        return await resp.json()
                    return {"status": "error", "code": resp.status}
            except aiohttp.ClientError as e:
                log.error(f"Status check error: {e}")
                return {"status": "unreachable", "error": str(e)}
