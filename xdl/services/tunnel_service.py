import asyncio
import json
import re
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from pyngrok import conf, ngrok, process
from pyngrok.exception import PyngrokError

from xdl.common.logger import setup_logger
from xdl.common.process_tracker import kill_pid
from xdl.core.errors import TunnelError, TunnelTimeoutError, XDLError
from xdl.schemas.logs import LogTag
from xdl.services.adb_service import AdbService
from xdl.services.project_settings import read_packager_info, read_settings, set_packager_info, set_settings
from xdl.services.url_builder import domainify, some_randomness
from xdl.services.user_service import ANONYMOUS_USERNAME

if TYPE_CHECKING:
    from xdl.context import XDLContext

logger = setup_logger("Tunnel")

TUNNEL_CONNECT_ATTEMPTS = 3
TUNNEL_RETRY_DELAY = 0.1
NGROK_ADDRESS_IN_USE = 103

TUNNEL_ISSUES_MESSAGE = (
    "We noticed your tunnel is having issues. This may be due to intermittent problems with ngrok. "
    "If you have trouble connecting to your app, try restarting the project or switching the host type to LAN."
)


class TunnelRemediation(Enum):
    NONE = auto()
    KILL_TUNNEL_PROCESS = auto()
    RESET_RANDOMNESS = auto()


def provider_error_code(error: Exception) -> int | None:
    """Numeric ngrok error code carried by a pyngrok exception, if any."""
    body = getattr(error, "body", None)
    if body:
        try:
            payload = json.loads(body) if isinstance(body, (str, bytes)) else body
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("error_code") is not None:
            digits = re.sub(r"\D", "", str(payload["error_code"]))
            if digits:
                return int(digits)

    match = re.search(r"ERR_NGROK_(\d+)", f"{error} {getattr(error, 'ngrok_error', '') or ''}")
    return int(match.group(1)) if match else None


def provider_error_payload(error: Exception) -> dict:
    return {
        "message": str(error),
        "error_code": provider_error_code(error),
        "body": getattr(error, "body", None),
        "ngrok_error": getattr(error, "ngrok_error", None),
    }


def is_address_in_use(error: Exception) -> bool:
    return provider_error_code(error) == NGROK_ADDRESS_IN_USE


def suggest_remediation(error: Exception, previous_in_use_failures: int) -> TunnelRemediation:
    """
    What to do before retrying a failed connect.

    Only "address in use" failures have a remedy: the first one means a stale
    tunnel process is probably holding the hostname; after that, pick a new
    hostname. Other failures in between do not count.
    """
    if not is_address_in_use(error):
        return TunnelRemediation.NONE
    if previous_in_use_failures == 0:
        return TunnelRemediation.KILL_TUNNEL_PROCESS
    return TunnelRemediation.RESET_RANDOMNESS


def tunnel_status(log) -> str | None:
    message = str(getattr(log, "msg", "") or "").lower()
    if "reconnecting" in message or "session closed" in message:
        return "closed"
    if "tunnel session started" in message or "client session established" in message:
        return "connected"
    return None


class NgrokClient:
    """Adapter over pyngrok; the blocking calls are meant for asyncio.to_thread."""

    def __init__(self, auth_token: str | None = None):
        self._listeners: list[Callable] = []
        self.pyngrok_config = conf.PyngrokConfig(auth_token=auth_token, log_event_callback=self._dispatch_log)

    def add_log_listener(self, listener: Callable) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_log_listener(self, listener: Callable) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _dispatch_log(self, log) -> None:
        for listener in list(self._listeners):
            listener(log)

    def connect(self, port: int, hostname: str | None = None) -> str:
        options = {"domain": hostname} if hostname else {}
        tunnel = ngrok.connect(str(port), "http", pyngrok_config=self.pyngrok_config, **options)
        return tunnel.public_url

    def kill(self) -> None:
        ngrok.kill(self.pyngrok_config)

    def active_pid(self) -> int | None:
        if not process.is_process_running(self.pyngrok_config.ngrok_path):
            return None
        return ngrok.get_ngrok_process(self.pyngrok_config).proc.pid


class TunnelService:
    """Public tunnels to the manifest server and the bundler."""

    def __init__(self, context: "XDLContext", project_root, client: NgrokClient | None = None, adb: AdbService | None = None):
        self._context = context
        self.project_root = str(project_root)
        self._client = client or NgrokClient(context.config.ngrok_auth_token)
        self._adb = adb or AdbService()
        self._project_logger = context.project_logger(project_root)
        self._pending: asyncio.Task | None = None
        # Bumped by every stop(); an establishment from an older generation must not persist anything
        self._generation = 0

    def _url_randomness(self) -> str:
        randomness = read_settings(self.project_root).url_randomness
        if not randomness:
            randomness = some_randomness()
            set_settings(self.project_root, url_randomness=randomness)
        return randomness

    def hostname(self, username: str, prefix: str | None = None) -> str:
        parts = [prefix] if prefix else []
        parts += [
            self._url_randomness(),
            domainify(username),
            domainify(Path(self.project_root).name),
            self._context.config.ngrok_domain,
        ]
        return ".".join(parts)

    def _on_ngrok_log(self, log) -> None:
        status = tunnel_status(log)
        if status == "closed":
            self._project_logger.warning(LogTag.TUNNEL, TUNNEL_ISSUES_MESSAGE)
        elif status == "connected":
            self._project_logger.info(LogTag.TUNNEL, "Tunnel connected.")

    async def _apply_remediation(self, remediation: TunnelRemediation, ngrok_pid: int | None) -> None:
        if remediation is TunnelRemediation.KILL_TUNNEL_PROCESS:
            if ngrok_pid:
                kill_pid(ngrok_pid)
            else:
                await asyncio.to_thread(self._client.kill)
        elif remediation is TunnelRemediation.RESET_RANDOMNESS:
            set_settings(self.project_root, url_randomness=some_randomness())

    async def connect_with_retries(self, port: int, hostname_factory: Callable[[], str], ngrok_pid: int | None = None) -> str:
        """Connect one tunnel, retrying up to TUNNEL_CONNECT_ATTEMPTS times in total."""
        in_use_failures = 0
        for attempt in range(TUNNEL_CONNECT_ATTEMPTS):
            hostname = hostname_factory()
            try:
                return await asyncio.to_thread(self._client.connect, port, hostname)
            except (PyngrokError, OSError) as e:
                if attempt + 1 >= TUNNEL_CONNECT_ATTEMPTS:
                    raise TunnelError(f"Could not start tunnel: {e}", provider_error=provider_error_payload(e))
                remediation = suggest_remediation(e, in_use_failures)
                if is_address_in_use(e):
                    in_use_failures += 1
                logger.debug(f"[Tunnel] Attempt {attempt + 1} for port {port} failed ({e}); remediation: {remediation.name}")
                await self._apply_remediation(remediation, ngrok_pid)
                ngrok_pid = None
                await asyncio.sleep(TUNNEL_RETRY_DELAY)

    async def _establish(self, expo_server_port: int, packager_port: int, username: str, ngrok_pid: int | None) -> tuple[str, str]:
        generation = self._generation
        expo_connect = self.connect_with_retries(
            expo_server_port, lambda: self.hostname(username), ngrok_pid
        )
        if packager_port == expo_server_port:
            expo_url = await expo_connect
            packager_url = expo_url
        else:
            expo_url, packager_url = await asyncio.gather(
                expo_connect,
                self.connect_with_retries(packager_port, lambda: self.hostname(username, "packager"), ngrok_pid),
            )

        active_pid = await asyncio.to_thread(self._client.active_pid)
        if generation != self._generation:
            logger.debug("[Tunnel] Tunnels were stopped while connecting, discarding their URLs")
            await asyncio.to_thread(self._client.kill)
            raise TunnelError("Tunnels were stopped while connecting", code="TUNNEL_STOPPED")
        set_packager_info(
            self.project_root,
            expo_server_ngrok_url=expo_url,
            packager_ngrok_url=packager_url,
            ngrok_pid=active_pid,
        )
        self._project_logger.info(LogTag.TUNNEL, "Tunnel ready.")
        return expo_url, packager_url

    def _on_late_completion(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._project_logger.error(LogTag.TUNNEL, f"Tunnel failed after timing out: {error}")
        else:
            logger.info("[Tunnel] Tunnel became ready after the start timeout")

    async def start(self) -> tuple[str, str]:
        """Open both tunnels. Returns (manifest server URL, bundler URL)."""
        info = read_packager_info(self.project_root)
        if not info.packager_port:
            raise XDLError("NO_PACKAGER_PORT", "No packager found for project at " + self.project_root)
        if not info.expo_server_port:
            raise XDLError("NO_EXPO_SERVER_PORT", "No Expo server found for project at " + self.project_root)

        await self.stop()

        if await self._adb.start_reverse(self.project_root):
            self._project_logger.info(
                LogTag.EXPO,
                "Successfully ran `adb reverse`. Localhost URLs should work on the connected Android device.",
            )

        username = await self._context.user_manager.get_current_username() or ANONYMOUS_USERNAME
        ngrok_pid = read_packager_info(self.project_root).ngrok_pid
        self._client.add_log_listener(self._on_ngrok_log)

        task = asyncio.create_task(
            self._establish(info.expo_server_port, info.packager_port, username, ngrok_pid)
        )
        self._pending = task
        done, _ = await asyncio.wait({task}, timeout=self._context.config.tunnel_timeout)
        if task not in done:
            # Left running: a late success still records its URLs unless stop() ran first
            task.add_done_callback(self._on_late_completion)
            raise TunnelTimeoutError()
        self._pending = None
        return task.result()

    async def stop(self) -> None:
        self._generation += 1
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

        info = read_packager_info(self.project_root)
        active_pid = await asyncio.to_thread(self._client.active_pid)

        if info.ngrok_pid and info.ngrok_pid != active_pid:
            # Tunnel process from an earlier session, not ours to disconnect
            kill_pid(info.ngrok_pid)
        else:
            await asyncio.to_thread(self._client.kill)

        set_packager_info(self.project_root, expo_server_ngrok_url=None, packager_ngrok_url=None, ngrok_pid=None)
        self._client.remove_log_listener(self._on_ngrok_log)
        await self._adb.stop_reverse(self.project_root)
