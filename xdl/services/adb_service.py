import asyncio
import shutil
from xdl.common.logger import setup_logger
from xdl.services.project_settings import read_packager_info

logger = setup_logger("Adb")


class AdbService:
    """Port forwarding to attached Android devices via `adb reverse`."""

    def __init__(self, adb_path: str | None = None):
        self._adb_path = adb_path or shutil.which("adb")

    @property
    def available(self) -> bool:
        return self._adb_path is not None

    async def _run(self, *args: str) -> tuple[int, str]:
        process = await asyncio.create_subprocess_exec(
            self._adb_path,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        output, _ = await process.communicate()
        return process.returncode, output.decode("utf-8", errors="replace")

    async def attached_devices(self) -> list[str]:
        if not self.available:
            return []
        code, output = await self._run("devices")
        if code != 0:
            logger.debug(f"[Adb] `adb devices` failed: {output.strip()}")
            return []
        devices = []
        for line in output.splitlines()[1:]:
            parts = line.split()
            if len(parts) >= 2 and parts[1] == "device":
                devices.append(parts[0])
        return devices

    def _ports(self, project_root) -> list[int]:
        info = read_packager_info(project_root)
        return [port for port in (info.expo_server_port, info.packager_port) if port]

    async def start_reverse(self, project_root) -> bool:
        """Forward the project's ports on every device. True if all succeeded."""
        devices = await self.attached_devices()
        if not devices:
            return False
        success = True
        for device in devices:
            for port in self._ports(project_root):
                code, output = await self._run("-s", device, "reverse", f"tcp:{port}", f"tcp:{port}")
                if code != 0:
                    logger.warning(f"[Adb] Couldn't adb reverse tcp:{port} on {device}: {output.strip()}")
                    success = False
        return success

    async def stop_reverse(self, project_root) -> None:
        for device in await self.attached_devices():
            for port in self._ports(project_root):
                await self._run("-s", device, "reverse", "--remove", f"tcp:{port}")
