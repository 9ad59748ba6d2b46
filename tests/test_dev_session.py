import asyncio
import pytest
from conftest import write_project
from xdl.core.errors import NetworkError
from xdl.schemas.user import User
from xdl.services.api_client import ApiClient
from xdl.services.dev_session import DevSession
from xdl.services.project_settings import set_packager_info, set_settings

EXP = {"name": "My App", "slug": "my-app", "description": "demo"}


@pytest.fixture
def signed_in(context, monkeypatch):
    user = User(username="alice", sessionSecret="s3cret")

    async def current_user():
        return user

    monkeypatch.setattr(context.user_manager, "get_current_user", current_user)
    return user


@pytest.fixture
def posts(monkeypatch):
    calls = []

    def post(self, path, data=None, params=None):
        calls.append((path, data))
        return {}

    monkeypatch.setattr(ApiClient, "post", post)
    return calls


@pytest.fixture
def localhost_project(project_root):
    set_packager_info(project_root, expo_server_port=19000, packager_port=19001)
    set_settings(project_root, host_type="localhost")
    return project_root


@pytest.mark.asyncio
async def test_notify_alive_posts_session(context, localhost_project, signed_in, posts):
    assert await DevSession(context).notify_alive(str(localhost_project), EXP) is True

    path, payload = posts[0]
    assert path == "development-sessions/notify-alive"
    session = payload["session"]
    assert session["url"] == "exp://localhost:19000"
    assert session["source"] == "desktop"
    assert session["config"]["slug"] == "my-app"
    assert session["description"].startswith("My App on ")


@pytest.mark.asyncio
async def test_no_heartbeat_without_user_or_network(context, localhost_project, posts):
    session = DevSession(context)
    assert await session.notify_alive(str(localhost_project), EXP) is False

    context.go_offline()
    assert await session.notify_alive(str(localhost_project), EXP) is False
    assert posts == []


@pytest.mark.asyncio
async def test_heartbeat_failures_are_not_fatal(context, localhost_project, signed_in, monkeypatch):
    def post(self, path, data=None, params=None):
        raise NetworkError("down")

    monkeypatch.setattr(ApiClient, "post", post)
    assert await DevSession(context).notify_alive(str(localhost_project), EXP) is False


@pytest.mark.asyncio
async def test_loop_repeats_until_stopped(context, localhost_project, signed_in, posts):
    context.config.heartbeat_interval = 0.05
    session = DevSession(context)

    session.start(localhost_project, EXP)
    await asyncio.sleep(0.3)
    assert session.is_running
    session.stop()

    sent = len(posts)
    assert sent >= 2
    await asyncio.sleep(0.15)
    assert len(posts) == sent
    assert not session.is_running


@pytest.mark.asyncio
async def test_loop_survives_a_broken_project_config(context, localhost_project, signed_in, posts):
    context.config.heartbeat_interval = 0.05
    (localhost_project / "app.json").write_text("{")
    session = DevSession(context)

    session.start(localhost_project, EXP)
    await asyncio.sleep(0.2)
    assert session.is_running
    assert posts == []

    write_project(localhost_project)
    await asyncio.sleep(0.2)
    assert len(posts) > 0
    session.stop()
