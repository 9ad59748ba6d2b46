import asyncio
import pytest
from test_tunnel_service import FakeAdb, FakeNgrokClient
from xdl.core.errors import TunnelTimeoutError, XDLError
from xdl.project import ProjectSession, StartOptions
from xdl.schemas.settings import ProjectStatus
from xdl.services.project_settings import PACKAGER_INFO_FIELDS, read_packager_info, set_packager_info
from xdl.services.tunnel_service import TunnelService


class FakeExpoServer:
    def __init__(self, root, hang_on_stop=False):
        self.root = root
        self.requested_port = None
        self.hang_on_stop = hang_on_stop
        self.stopped = False

    async def start(self):
        set_packager_info(self.root, expo_server_port=self.requested_port or 19000)
        return 19000

    async def stop(self):
        if self.hang_on_stop:
            await asyncio.sleep(60)
        self.stopped = True
        set_packager_info(self.root, expo_server_port=None)


class FakePackager:
    def __init__(self, root):
        self.root = root
        self.options = None

    async def start(self, options=None):
        self.options = options
        set_packager_info(self.root, packager_port=19001, packager_pid=None)
        return 19001

    async def stop(self):
        set_packager_info(self.root, packager_port=None, packager_pid=None)


class FakeTunnels:
    def __init__(self, root, error=None):
        self.root = root
        self.error = error
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True
        if self.error:
            raise self.error
        set_packager_info(self.root, expo_server_ngrok_url="https://a.exp.direct", packager_ngrok_url="https://b.exp.direct")
        return "https://a.exp.direct", "https://b.exp.direct"

    async def stop(self):
        self.stopped = True
        set_packager_info(self.root, expo_server_ngrok_url=None, packager_ngrok_url=None, ngrok_pid=None)


class FakeDevSession:
    def __init__(self):
        self.started_with = None
        self.stopped = False

    def start(self, project_root, exp):
        self.started_with = (project_root, exp)

    def stop(self):
        self.stopped = True


def make_session(context, root, **overrides):
    parts = {
        "expo_server": FakeExpoServer(root),
        "packager": FakePackager(root),
        "tunnels": FakeTunnels(root),
        "dev_session": FakeDevSession(),
    }
    parts.update(overrides)
    return ProjectSession(root, context, **parts), parts


@pytest.mark.asyncio
async def test_start_brings_everything_up(context, project_root):
    session, parts = make_session(context, project_root)

    exp = await session.start(StartOptions(reset_cache=True, max_workers=2, expo_server_port=19100))

    assert exp["slug"] == "my-app"
    assert session.current_status() == ProjectStatus.RUNNING
    assert parts["expo_server"].requested_port == 19100
    assert parts["packager"].options.reset is True
    assert parts["packager"].options.max_workers == 2
    assert parts["tunnels"].started
    assert parts["dev_session"].started_with[1]["slug"] == "my-app"

    await session.stop()
    assert session.current_status() == ProjectStatus.EXITED
    assert parts["dev_session"].stopped


@pytest.mark.asyncio
async def test_offline_skips_tunnels(context, project_root):
    context.go_offline()
    session, parts = make_session(context, project_root)

    await session.start()
    assert not parts["tunnels"].started

    await session.stop()
    assert not parts["tunnels"].stopped


@pytest.mark.asyncio
async def test_tunnel_failure_is_logged_not_raised(context, project_root, records):
    session, parts = make_session(context, project_root, tunnels=FakeTunnels(project_root, TunnelTimeoutError()))

    await session.start()

    assert parts["dev_session"].started_with is not None
    assert any(r.tag.value == "tunnel" and "timed out" in r.message for r in records)
    await session.stop()


@pytest.mark.asyncio
async def test_tunnels_finishing_after_stop_leave_packager_info_clear(context, project_root):
    client = FakeNgrokClient(delay=context.config.tunnel_timeout + 0.3)
    tunnels = TunnelService(context, project_root, client=client, adb=FakeAdb())
    session, _ = make_session(context, project_root, tunnels=tunnels)

    await session.start()
    await session.stop()
    await asyncio.sleep(0.8)

    info = read_packager_info(project_root)
    assert all(getattr(info, name) is None for name in PACKAGER_INFO_FIELDS)


@pytest.mark.asyncio
async def test_hanging_stop_still_resets_packager_info(context, project_root):
    session, _ = make_session(context, project_root, expo_server=FakeExpoServer(project_root, hang_on_stop=True))
    await session.start()

    await asyncio.wait_for(session.stop(), timeout=context.config.stop_timeout + 2)

    info = read_packager_info(project_root)
    assert all(getattr(info, name) is None for name in PACKAGER_INFO_FIELDS)


@pytest.mark.asyncio
async def test_stop_without_start_is_harmless(context, project_root):
    session, _ = make_session(context, project_root)
    await session.stop()
    assert session.current_status() == ProjectStatus.EXITED


@pytest.mark.asyncio
async def test_missing_project_root(context, tmp_path):
    session, _ = make_session(context, tmp_path / "missing")
    with pytest.raises(XDLError) as excinfo:
        await session.start()
    assert excinfo.value.code == "INVALID_PROJECT_ROOT"


def test_manifest_url_for_running_project(context, project_root):
    session, _ = make_session(context, project_root)
    set_packager_info(project_root, expo_server_port=19000, packager_port=19001)
    assert session.manifest_url({"hostType": "localhost"}) == "exp://localhost:19000"
