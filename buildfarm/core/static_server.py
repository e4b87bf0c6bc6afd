"""
Disposable static file server for pre-rendering.

Serves a build output directory on an ephemeral loopback port with
single-page-application fallback:
1. exact file match
2. that directory's index.html
3. root index.html

When a shell snapshot is given, it is served in place of the root
index.html, which pre-rendering may overwrite while the server runs.
"""
import asyncio
import contextlib
import logging
import socket
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import FileResponse, HTMLResponse, PlainTextResponse, Response
from starlette.routing import Route

logger = logging.getLogger(__name__)

INDEX_DOCUMENT = "index.html"

STARTUP_TIMEOUT_S = 10.0


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves the host process signal handlers alone."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def resolve_static_path(root: Path, url_path: str) -> Optional[Path]:
    """
    Map a request path to a file under root using SPA fallback rules.

    Paths that would escape root fall back to the root index document.
    """
    root = root.resolve()
    relative = unquote(url_path).lstrip("/")
    candidate = (root / relative).resolve()

    if candidate == root or root in candidate.parents:
        if candidate.is_file():
            return candidate
        if candidate.is_dir() and (candidate / INDEX_DOCUMENT).is_file():
            return candidate / INDEX_DOCUMENT

    fallback = root / INDEX_DOCUMENT
    if fallback.is_file():
        return fallback
    return None


def create_static_app(root: Path, shell: Optional[bytes] = None) -> Starlette:
    """Starlette app serving root with SPA fallback."""
    root = Path(root)
    root_index = root.resolve() / INDEX_DOCUMENT

    async def serve(request: Request) -> Response:
        path = resolve_static_path(root, request.url.path)
        if path is None:
            return PlainTextResponse("Not found", status_code=404)
        if shell is not None and path == root_index:
            return HTMLResponse(shell)
        return FileResponse(path)

    return Starlette(routes=[Route("/{path:path}", serve, methods=["GET", "HEAD"])])


class StaticServer:
    """
    Async context manager running the static app under uvicorn.

    Usage:
        async with StaticServer(dist_dir) as server:
            url = server.url_for("/about")
    """

    def __init__(self, root: Path, host: str = "127.0.0.1", shell: Optional[bytes] = None):
        self.root = Path(root)
        self.host = host
        self.shell = shell
        self.port: Optional[int] = None
        self._server: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None
        self._socket: Optional[socket.socket] = None

    def url_for(self, route: str) -> str:
        return f"http://{self.host}:{self.port}{route}"

    async def start(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.host, 0))
        self._socket = sock
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            create_static_app(self.root, shell=self.shell),
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT_S
        while not self._server.started:
            if self._task.done():
                await self.stop()
                raise RuntimeError("Static server failed to start")
            if loop.time() > deadline:
                await self.stop()
                raise RuntimeError("Static server did not start in time")
            await asyncio.sleep(0.02)

        logger.info(f"static_server_started port={self.port}")

    async def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=STARTUP_TIMEOUT_S)
            except asyncio.TimeoutError:
                self._task.cancel()
            except Exception:
                logger.exception("static_server_stop_failed")
        if self._socket is not None:
            self._socket.close()
        logger.info(f"static_server_stopped port={self.port}")
        self._server = None
        self._task = None
        self._socket = None

    async def __aenter__(self) -> "StaticServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
