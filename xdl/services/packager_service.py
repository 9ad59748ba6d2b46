import asyncio
import os
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Callable

import aiohttp
from pydantic import BaseModel

from xdl.common.logger import setup_logger
from xdl.common.process_tracker import is_process_running, kill_process_tree
from xdl.core.config import DEFAULT_PACKAGER_PORT
from xdl.core.errors import PackagerError, PackagerExitError, PackagerTimeoutError
from xdl.services.packager_output import OutputClassifier, PackagerLogSink
from xdl.services.project_config import gte_sdk_version, read_config
from xdl.services.project_settings import read_packager_info, set_packager_info
from xdl.services.url_builder import ASSET_PLUGIN_PATH, construct_bundle_url
from xdl.utils.network import find_free_port

if TYPE_CHECKING:
    from xdl.context import XDLContext

logger = setup_logger("Packager")

READY_MARKER = "packager-status:running"
ARRAY_UNION_KEYS = ("sourceExts", "assetExts")
DEFAULT_SOURCE_EXTS = ["js", "jsx", "ts", "tsx", "json"]
STREAM_LIMIT = 1024 * 1024


class PackagerState(Enum):
    STOPPED = auto()
    STARTING = auto()
    RUNNING = auto()
    STOPPING = auto()
    ERRORED = auto()


ALLOWED_TRANSITIONS = {
    PackagerState.STOPPED: {PackagerState.STARTING, PackagerState.STOPPING},
    PackagerState.STARTING: {PackagerState.RUNNING, PackagerState.ERRORED, PackagerState.STOPPING},
    PackagerState.RUNNING: {PackagerState.STOPPING, PackagerState.ERRORED},
    PackagerState.STOPPING: {PackagerState.STOPPED},
    PackagerState.ERRORED: {PackagerState.STARTING, PackagerState.STOPPING},
}


class PackagerStartOptions(BaseModel):
    reset: bool = False
    max_workers: int | None = None
    metro_port: int | None = None


def merge_packager_options(base: dict, overrides: dict) -> dict:
    """Project `packagerOpts` win, except list keys in ARRAY_UNION_KEYS which are unioned."""
    merged = dict(base)
    for key, value in overrides.items():
        if key in ARRAY_UNION_KEYS and isinstance(value, list):
            union = list(merged.get(key) or [])
            union.extend(item for item in value if item not in union)
            merged[key] = union
        else:
            merged[key] = value
    return merged


def packager_cli_args(options: dict) -> list[str]:
    args = []
    for key, value in options.items():
        if value is None or value is False:
            continue
        if value is True or value == "":
            args.append(f"--{key}")
        elif isinstance(value, (list, tuple)):
            args.extend([f"--{key}", ",".join(str(v) for v in value)])
        else:
            args.extend([f"--{key}", str(value)])
    return args


def resolve_cli_path(project_root, exp: dict) -> str:
    root = Path(project_root)
    if exp.get("rnCliPath"):
        return str(root / exp["rnCliPath"])
    modern = root / "node_modules" / "react-native" / "cli.js"
    if modern.exists():
        return str(modern)
    return str(root / "node_modules" / "react-native" / "local-cli" / "cli.js")


def node_command(cli_path: str, args: list[str]) -> list[str]:
    return ["node", cli_path, "start", *args]


class PackagerService:
    """
    Supervises the bundler subprocess for one project.

    STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED, with ERRORED
    reachable whenever the process dies on its own.
    """

    def __init__(
        self,
        context: "XDLContext",
        project_root,
        command_factory: Callable[[str, list[str]], list[str]] = node_command,
        classifier: OutputClassifier | None = None,
        ready_marker: str = READY_MARKER,
    ):
        self._context = context
        self.project_root = str(project_root)
        self._command_factory = command_factory
        self.classifier = classifier or OutputClassifier(project_root)
        self.ready_marker = ready_marker
        self.state = PackagerState.STOPPED
        self._process: asyncio.subprocess.Process | None = None
        self._exit_future: asyncio.Future | None = None
        self._tasks: list[asyncio.Task] = []
        self._sink = PackagerLogSink(context.project_logger(project_root), self.classifier)

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def _transition(self, new_state: PackagerState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise PackagerError("INVALID_STATE", f"Cannot move packager from {self.state.name} to {new_state.name}")
        logger.debug(f"[Packager] {self.state.name} -> {new_state.name}")
        self.state = new_state

    def build_options(self, exp: dict, port: int, options: PackagerStartOptions) -> dict:
        base = {"port": port, "sourceExts": list(DEFAULT_SOURCE_EXTS)}
        if gte_sdk_version(exp, "33.0.0"):
            base["assetPlugins"] = str(Path(self.project_root) / ASSET_PLUGIN_PATH)
        if options.max_workers:
            base["max-workers"] = options.max_workers
        return merge_packager_options(base, exp.get("packagerOpts") or {})

    def build_env(self) -> dict:
        env = dict(os.environ)
        env["REACT_NATIVE_APP_ROOT"] = self.project_root
        env["ELECTRON_RUN_AS_NODE"] = "1"
        if os.getenv("METRO_NODE_OPTIONS"):
            env["NODE_OPTIONS"] = os.environ["METRO_NODE_OPTIONS"]
        return env

    async def start(self, options: PackagerStartOptions | None = None) -> int:
        """Spawn the bundler and wait until it reports itself running. Returns its port."""
        options = options or PackagerStartOptions()
        await self.stop()
        self._transition(PackagerState.STARTING)

        try:
            exp = read_config(self.project_root).exp
            port = options.metro_port or await asyncio.to_thread(find_free_port, DEFAULT_PACKAGER_PORT)
            packager_opts = self.build_options(exp, port, options)
            port = int(packager_opts.get("port") or port)

            args = packager_cli_args(packager_opts)
            if self._context.config.debug:
                args.append("--verbose")
            if options.reset:
                args.append("--reset-cache")
            cmd = self._command_factory(resolve_cli_path(self.project_root, exp), args)

            logger.debug(f"[Packager] Spawning {' '.join(cmd)}")
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=self.project_root,
                env=self.build_env(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except Exception:
            self._transition(PackagerState.ERRORED)
            raise

        self._process = process
        self._exit_future = asyncio.get_running_loop().create_future()
        set_packager_info(self.project_root, packager_port=port, packager_pid=process.pid)

        self._tasks = [
            asyncio.create_task(self._pipe_output(process.stdout, is_error=False)),
            asyncio.create_task(self._pipe_output(process.stderr, is_error=True)),
            asyncio.create_task(self._watch_exit(process, self._exit_future)),
        ]

        url = construct_bundle_url(self.project_root, {"urlType": "http", "hostType": "localhost"})
        readiness = asyncio.create_task(self.wait_until_ready(url))
        done, _ = await asyncio.wait({readiness, self._exit_future}, return_when=asyncio.FIRST_COMPLETED)

        if readiness not in done:
            readiness.cancel()
            raise PackagerExitError(self._exit_future.result())

        try:
            readiness.result()
        except Exception:
            self._transition(PackagerState.ERRORED)
            await self.stop()
            raise

        self._transition(PackagerState.RUNNING)
        logger.info(f"[Packager] Metro Bundler ready on port {port}")
        return port

    async def check_status(self, session: aiohttp.ClientSession, url: str) -> bool:
        try:
            async with session.get(f"{url}/status", timeout=aiohttp.ClientTimeout(total=2)) as resp:
                if resp.status >= 300:
                    return False
                return self.ready_marker in await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False

    async def wait_until_ready(self, url: str) -> None:
        config = self._context.config
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.packager_ready_timeout
        async with aiohttp.ClientSession() as session:
            while not await self.check_status(session, url):
                if loop.time() >= deadline:
                    raise PackagerTimeoutError(
                        f"Metro Bundler did not report '{self.ready_marker}' within {config.packager_ready_timeout:g}s"
                    )
                await asyncio.sleep(config.packager_ready_interval)

    async def _pipe_output(self, stream: asyncio.StreamReader, is_error: bool) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            self._sink.write(line.decode("utf-8", errors="replace"), is_error)

    async def _watch_exit(self, process: asyncio.subprocess.Process, exit_future: asyncio.Future) -> None:
        returncode = await process.wait()
        expected = self.state in (PackagerState.STOPPING, PackagerState.STOPPED)

        if expected:
            logger.debug(f"[Packager] Metro Bundler exited with code {returncode}")
        else:
            self._sink.logger.error("metro", f"Metro Bundler process exited with code {returncode}")
            if self._process is process:
                self._transition(PackagerState.ERRORED)

        if read_packager_info(self.project_root).packager_pid == process.pid:
            set_packager_info(self.project_root, packager_port=None, packager_pid=None)
        if not exit_future.done():
            exit_future.set_result(returncode)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self._context.config.packager_stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Packager] PID {process.pid} ignored SIGTERM, killing process tree")
            await asyncio.to_thread(kill_process_tree, process.pid)

    async def stop(self) -> None:
        """Stop our bundler, or one left behind by an earlier session, and clear its persisted fields."""
        info = read_packager_info(self.project_root)
        process = self._process
        if process is None and not info.packager_pid and not info.packager_port:
            return

        self._transition(PackagerState.STOPPING)
        try:
            if process is not None and process.returncode is None:
                await self._terminate(process)
            elif info.packager_pid and is_process_running(info.packager_pid):
                logger.debug(f"[Packager] Killing leftover Metro Bundler (PID: {info.packager_pid})")
                await asyncio.to_thread(kill_process_tree, info.packager_pid)

            pending = [task for task in self._tasks if not task.done()]
            if pending:
                await asyncio.wait(pending, timeout=1.0)
            for task in pending:
                task.cancel()
        finally:
            self._tasks = []
            self._process = None
            set_packager_info(self.project_root, packager_port=None, packager_pid=None)
            self.state = PackagerState.STOPPED
