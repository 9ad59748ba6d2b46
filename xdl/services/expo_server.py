import asyncio
from typing import TYPE_CHECKING

import aiohttp
import uvicorn
from fastapi import FastAPI

from xdl.common.logger import setup_logger
from xdl.core.config import DEFAULT_EXPO_SERVER_PORT
from xdl.core.errors import XDLError
from xdl.routers import manifest
from xdl.services.manifest_service import ManifestService
from xdl.services.project_config import DoctorResult, validate_project
from xdl.services.project_settings import read_packager_info, set_packager_info
from xdl.utils.network import find_free_port

if TYPE_CHECKING:
    from xdl.context import XDLContext

logger = setup_logger("ExpoServer")

SERVER_HOST = "0.0.0.0"
SHUTDOWN_TIMEOUT = 5.0


class ExpoServer:
    """Local HTTP server that hands manifests to devices and collects their logs."""

    def __init__(self, context: "XDLContext", project_root, port: int | None = None):
        self._context = context
        self.project_root = str(project_root)
        self.project_logger = context.project_logger(project_root)
        self.manifest_service = ManifestService(context, project_root)
        self.requested_port = port
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None
        self.port: int | None = None
        self.app = self.create_app()

    def create_app(self) -> FastAPI:
        app = FastAPI(title="xdl manifest server", docs_url=None, redoc_url=None, openapi_url=None)
        app.state.expo_server = self
        app.include_router(manifest.router)
        return app

    @property
    def is_running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    async def start(self) -> int:
        await self.stop()

        result = await asyncio.to_thread(validate_project, self.project_root, self.project_logger)
        if result is DoctorResult.FATAL:
            raise XDLError("DOCTOR_FATAL", "There was an error validating the project. See the log above.")

        port = self.requested_port or await asyncio.to_thread(find_free_port, DEFAULT_EXPO_SERVER_PORT)
        # Recorded before listening so URL construction works during startup
        set_packager_info(self.project_root, expo_server_port=port)

        config = uvicorn.Config(self.app, host=SERVER_HOST, port=port, log_level="warning", lifespan="off")
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._serve(port))

        while not self._server.started:
            if self._serve_task.done():
                self._server = None
                set_packager_info(self.project_root, expo_server_port=None)
                error = None if self._serve_task.cancelled() else self._serve_task.exception()
                raise XDLError("EXPO_SERVER_FAILED", f"Manifest server could not listen on port {port}: {error}")
            await asyncio.sleep(0.05)

        self.port = port
        logger.info(f"[ExpoServer] Listening on port {port}")
        return port

    async def _serve(self, port: int) -> None:
        try:
            await self._server.serve()
        except SystemExit as e:
            # uvicorn exits the interpreter when it cannot bind
            raise XDLError("EXPO_SERVER_FAILED", f"Manifest server on port {port} exited ({e.code})")

    def request_shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    async def stop(self) -> None:
        """Stop our listener, or ask a server left by another process to shut down."""
        info = read_packager_info(self.project_root)
        if self._server is not None:
            self.request_shutdown()
            try:
                await asyncio.wait_for(asyncio.shield(self._serve_task), timeout=SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("[ExpoServer] Listener did not stop in time, cancelling")
                self._serve_task.cancel()
            except XDLError as e:
                logger.error(f"[ExpoServer] {e}")
            self._server = None
            self._serve_task = None
        elif info.expo_server_port:
            await self._request_remote_shutdown(info.expo_server_port)

        self.port = None
        set_packager_info(self.project_root, expo_server_port=None)

    async def _request_remote_shutdown(self, port: int) -> None:
        url = f"http://localhost:{port}/shutdown"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, timeout=aiohttp.ClientTimeout(total=1)) as resp:
                    logger.debug(f"[ExpoServer] Remote shutdown on port {port}: {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"[ExpoServer] No server answered on port {port}: {e}")
