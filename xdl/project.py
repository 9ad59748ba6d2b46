import asyncio
from pathlib import Path

from pydantic import BaseModel

from xdl.common.logger import setup_logger
from xdl.common.process_tracker import is_process_running, kill_process_tree
from xdl.context import XDLContext
from xdl.core.errors import ConfigurationError
from xdl.schemas.logs import LogTag
from xdl.schemas.settings import ProjectStatus
from xdl.services.dev_session import DevSession
from xdl.services.expo_server import ExpoServer
from xdl.services.packager_service import PackagerService, PackagerStartOptions
from xdl.services.project_config import read_config
from xdl.services.project_settings import (
    PACKAGER_INFO_FIELDS,
    current_status,
    read_packager_info,
    reset_packager_info,
)
from xdl.services.tunnel_service import TunnelService
from xdl.services.url_builder import construct_manifest_url

logger = setup_logger("Project")


class StartOptions(BaseModel):
    reset_cache: bool = False
    max_workers: int | None = None
    metro_port: int | None = None
    expo_server_port: int | None = None


class ProjectSession:
    """
    Starts and stops everything a project needs to be served to devices:
    the manifest server, the bundler, the tunnels and the heartbeat.
    """

    def __init__(
        self,
        project_root,
        context: XDLContext | None = None,
        *,
        expo_server: ExpoServer | None = None,
        packager: PackagerService | None = None,
        tunnels: TunnelService | None = None,
        dev_session: DevSession | None = None,
    ):
        self.project_root = str(Path(project_root).resolve())
        self.context = context or XDLContext()
        self.project_logger = self.context.project_logger(self.project_root)
        self.expo_server = expo_server or ExpoServer(self.context, self.project_root)
        self.packager = packager or PackagerService(self.context, self.project_root)
        self.tunnels = tunnels or TunnelService(self.context, self.project_root)
        self.dev_session = dev_session or DevSession(self.context)

    def _assert_valid_root(self) -> None:
        if not Path(self.project_root).is_dir():
            raise ConfigurationError("INVALID_PROJECT_ROOT", f"Project root {self.project_root} does not exist")

    async def start(self, options: StartOptions | None = None) -> dict:
        """Bring the project up. Returns the project config that is being served."""
        options = options or StartOptions()
        self._assert_valid_root()
        exp = read_config(self.project_root).exp

        if options.expo_server_port:
            self.expo_server.requested_port = options.expo_server_port
        await self.expo_server.start()
        await self.packager.start(
            PackagerStartOptions(
                reset=options.reset_cache,
                max_workers=options.max_workers,
                metro_port=options.metro_port,
            )
        )

        if not self.context.offline:
            try:
                await self.tunnels.start()
            except Exception as e:
                self.project_logger.error(LogTag.TUNNEL, f"Error starting tunnel: {e}")

        self.dev_session.start(self.project_root, exp)
        logger.info(f"[Project] Serving {exp.get('name') or self.project_root}")
        return exp

    async def _stop_internal(self) -> None:
        await self.expo_server.stop()
        await self.packager.stop()
        if not self.context.offline:
            await self.tunnels.stop()

    async def stop(self) -> None:
        """
        Tear everything down within `stop_timeout` seconds. Never raises: on
        timeout or error the recorded processes are killed and every
        PackagerInfo field is reset.
        """
        self.dev_session.stop()
        try:
            await asyncio.wait_for(self._stop_internal(), timeout=self.context.config.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning("[Project] Stopping gracefully timed out, killing processes")
        except Exception as e:
            logger.error(f"[Project] Error while stopping: {e}")

        info = read_packager_info(self.project_root)
        if any(getattr(info, name) is not None for name in PACKAGER_INFO_FIELDS):
            await self._force_cleanup()

    async def _force_cleanup(self) -> None:
        info = read_packager_info(self.project_root)
        for pid in (info.packager_pid, info.ngrok_pid):
            if pid and is_process_running(pid):
                await asyncio.to_thread(kill_process_tree, pid)
        reset_packager_info(self.project_root)

    def current_status(self) -> ProjectStatus:
        return current_status(self.project_root)

    def manifest_url(self, opts: dict | None = None) -> str:
        return construct_manifest_url(self.project_root, opts, offline=self.context.offline, project_logger=self.project_logger)
