import asyncio
from typing import TYPE_CHECKING
from xdl.common.logger import setup_logger
from xdl.core.errors import ApiError, NetworkError, XDLError
from xdl.services.api_client import ApiClient
from xdl.services.url_builder import construct_manifest_url
from xdl.utils.network import os_hostname

if TYPE_CHECKING:
    from xdl.context import XDLContext

logger = setup_logger("DevSession")


class DevSession:
    """Tells the API every `heartbeat_interval` seconds that this project is being served."""

    def __init__(self, context: "XDLContext"):
        self._context = context
        self.keep_updating = False
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, project_root, exp: dict) -> None:
        if self.is_running:
            return
        self.keep_updating = True
        self._task = asyncio.create_task(self._run_heartbeat_loop(str(project_root), exp))

    async def _run_heartbeat_loop(self, project_root: str, exp: dict) -> None:
        while self.keep_updating:
            try:
                await self.notify_alive(project_root, exp)
            except XDLError as e:
                logger.warning(f"[DevSession] Heartbeat skipped | {e}")
            await asyncio.sleep(self._context.config.heartbeat_interval)

    async def notify_alive(self, project_root: str, exp: dict) -> bool:
        if self._context.offline:
            return False
        user = await self._context.user_manager.get_current_user()
        if user is None:
            return False

        hostname = os_hostname()
        payload = {
            "session": {
                "description": f"{exp.get('name')} on {hostname}",
                "hostname": hostname,
                "config": {
                    "description": exp.get("description"),
                    "name": exp.get("name"),
                    "slug": exp.get("slug"),
                    "primaryColor": exp.get("primaryColor"),
                },
                "url": construct_manifest_url(project_root, offline=self._context.offline),
                "source": "desktop",
            }
        }
        client = ApiClient.for_user(self._context.config, user)
        try:
            await asyncio.to_thread(client.post, "development-sessions/notify-alive", payload)
        except (ApiError, NetworkError) as e:
            logger.debug(f"[DevSession] Heartbeat failed | {e}")
            return False
        logger.debug("[DevSession] Heartbeat sent")
        return True

    def stop(self) -> None:
        self.keep_updating = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
