"""HTTP server exposing a directory as a blob store.

Provides endpoints for streaming blob uploads, downloads and deletes, with an
optional bearer token.
"""

from __future__ import annotations

import asyncio
import hmac
import os
from pathlib import Path

from aiohttp import web

from build_checkpoint.logging import get_logger
from build_checkpoint.naming import validate_blob_name

log = get_logger(source=__name__)

DEFAULT_PORT = 8765
CHUNK_SIZE = 1024 * 1024


class BlobServer:
    """HTTP server storing blobs as files under a root directory."""

    def __init__(
        self,
        root: Path | str,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        token: str | None = None,
    ):
        """Initialize blob server.

        Args:
            root: Directory where blobs are stored
            host: Interface to bind
            port: HTTP server port (0 picks a free port)
            token: Bearer token required on every request, if set
        """
        self.root = Path(root)
        self.host = host
        self.port = port
        self.token = token
        self.app: web.Application | None = None
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware])
        app.router.add_put("/blobs/{name}", self._handle_put)
        app.router.add_get("/blobs/{name}", self._handle_get)
        app.router.add_delete("/blobs/{name}", self._handle_delete)
        app.router.add_get("/status", self._handle_status)
        return app

    async def start(self) -> None:
        """Start HTTP server."""
        self.root.mkdir(parents=True, exist_ok=True)
        self.app = self.create_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        # Resolve the real port when an ephemeral one was requested
        server = getattr(self.site, "_server", None)
        if self.port == 0 and server is not None and server.sockets:
            self.port = server.sockets[0].getsockname()[1]

        log.info(f"Blob server started on {self.host}:{self.port}, root {self.root}")

    async def stop(self) -> None:
        """Gracefully shutdown server."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        self.site = None
        self.runner = None
        log.info("Blob server stopped")

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if self.token:
            expected = f"Bearer {self.token}"
            provided = request.headers.get("Authorization", "")
            if not hmac.compare_digest(provided.encode(), expected.encode()):
                log.warning(f"Rejected unauthenticated request from {request.remote or 'unknown'}")
                return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    def _blob_path(self, request: web.Request) -> Path:
        name = request.match_info["name"]
        try:
            validate_blob_name(name)
        except ValueError:
            raise web.HTTPBadRequest(
                text='{"error": "Invalid blob name"}', content_type="application/json"
            )
        return self.root / name

    async def _handle_put(self, request: web.Request) -> web.Response:
        """Handle PUT /blobs/{name} - streaming upload."""
        target = self._blob_path(request)
        partial = target.with_name(f".{target.name}.partial")
        bytes_received = 0
        try:
            with open(partial, "wb") as f:
                async for chunk in request.content.iter_chunked(CHUNK_SIZE):
                    f.write(chunk)
                    bytes_received += len(chunk)
            os.replace(partial, target)
        finally:
            # No-op after a successful rename
            partial.unlink(missing_ok=True)

        log.info(f"Stored blob {target.name} ({bytes_received} bytes)")
        return web.json_response({"name": target.name, "size_bytes": bytes_received})

    async def _handle_get(self, request: web.Request) -> web.StreamResponse:
        """Handle GET /blobs/{name} - streaming download."""
        path = self._blob_path(request)
        if not path.is_file():
            return web.json_response({"error": "Not found"}, status=404)
        return web.FileResponse(path, chunk_size=CHUNK_SIZE)

    async def _handle_delete(self, request: web.Request) -> web.Response:
        """Handle DELETE /blobs/{name} - absent blobs are not an error."""
        path = self._blob_path(request)
        try:
            path.unlink()
            deleted = True
        except FileNotFoundError:
            deleted = False
        if deleted:
            log.info(f"Deleted blob {path.name}")
        return web.json_response({"deleted": deleted})

    async def _handle_status(self, request: web.Request) -> web.Response:
        """Handle GET /status."""
        count = 0
        if self.root.is_dir():
            count = sum(
                1 for entry in self.root.iterdir()
                if entry.is_file() and not entry.name.startswith(".")
            )
        return web.json_response({"status": "ok", "blobs": count})
