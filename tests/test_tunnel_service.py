import asyncio
import json
import time
from types import SimpleNamespace

import pytest
from pyngrok.exception import PyngrokNgrokError, PyngrokNgrokHTTPError
from xdl.core.errors import TunnelError, TunnelTimeoutError, XDLError
from xdl.services import tunnel_service
from xdl.services.project_settings import read_packager_info, read_settings, set_packager_info, set_settings
from xdl.services.tunnel_service import (
    TUNNEL_ISSUES_MESSAGE,
    TunnelRemediation,
    TunnelService,
    provider_error_code,
    suggest_remediation,
)

NGROK_PID = 4242


def address_in_use():
    return PyngrokNgrokHTTPError(
        "ngrok client exception, API returned 502",
        "http://127.0.0.1:4040/api/tunnels",
        502,
        "failed to start tunnel",
        {},
        json.dumps({"error_code": 103, "msg": "the tunnel is already bound to another session"}),
    )


class FakeNgrokClient:
    def __init__(self, outcomes=None, delay=0.0):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.connects = []
        self.kills = 0
        self.listeners = []

    def connect(self, port, hostname=None):
        self.connects.append((port, hostname))
        if self.delay:
            time.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return f"https://{hostname}"

    def kill(self):
        self.kills += 1

    def active_pid(self):
        return NGROK_PID

    def add_log_listener(self, listener):
        self.listeners.append(listener)

    def remove_log_listener(self, listener):
        if listener in self.listeners:
            self.listeners.remove(listener)


class FakeAdb:
    def __init__(self):
        self.reversed = False

    async def start_reverse(self, project_root):
        self.reversed = True
        return True

    async def stop_reverse(self, project_root):
        self.reversed = False


@pytest.fixture
def ports(project_root):
    set_packager_info(project_root, expo_server_port=19000, packager_port=19001)
    set_settings(project_root, url_randomness="ab-cde")
    return project_root


def make_service(context, project_root, client):
    return TunnelService(context, project_root, client=client, adb=FakeAdb())


def test_hostname_layout(context, ports):
    service = make_service(context, ports, FakeNgrokClient())
    assert service.hostname("alice", "packager") == "packager.ab-cde.alice.myapp.exp.direct"
    assert service.hostname("Bob Smith") == "ab-cde.bob-smith.myapp.exp.direct"


def test_remediation_for_address_in_use():
    assert provider_error_code(address_in_use()) == 103
    assert provider_error_code(PyngrokNgrokError("ERR_NGROK_108: limited to 1 session")) == 108
    assert suggest_remediation(address_in_use(), 0) is TunnelRemediation.KILL_TUNNEL_PROCESS
    assert suggest_remediation(address_in_use(), 1) is TunnelRemediation.RESET_RANDOMNESS
    assert suggest_remediation(PyngrokNgrokError("auth failed"), 0) is TunnelRemediation.NONE
    assert suggest_remediation(PyngrokNgrokError("auth failed"), 1) is TunnelRemediation.NONE


@pytest.mark.asyncio
async def test_start_opens_both_tunnels(context, ports, records):
    client = FakeNgrokClient()
    service = make_service(context, ports, client)

    expo_url, packager_url = await service.start()

    assert expo_url == "https://ab-cde.anonymous.myapp.exp.direct"
    assert packager_url == "https://packager.ab-cde.anonymous.myapp.exp.direct"
    assert sorted(port for port, _ in client.connects) == [19000, 19001]

    info = read_packager_info(ports)
    assert info.expo_server_ngrok_url == expo_url
    assert info.packager_ngrok_url == packager_url
    assert info.ngrok_pid == NGROK_PID
    assert any(r.message == "Tunnel ready." for r in records)
    assert any("adb reverse" in r.message for r in records)


@pytest.mark.asyncio
async def test_shared_port_opens_a_single_tunnel(context, project_root):
    set_packager_info(project_root, expo_server_port=19000, packager_port=19000)
    client = FakeNgrokClient()
    expo_url, packager_url = await make_service(context, project_root, client).start()
    assert expo_url == packager_url
    assert len(client.connects) == 1


@pytest.mark.asyncio
async def test_connect_gives_up_after_three_attempts(context, project_root):
    set_packager_info(project_root, expo_server_port=19000, packager_port=19000)
    client = FakeNgrokClient(outcomes=[PyngrokNgrokError("boom")] * 5)
    service = make_service(context, project_root, client)

    with pytest.raises(TunnelError) as excinfo:
        await service.start()

    assert len(client.connects) == 3
    assert excinfo.value.provider_error["message"] == "boom"
    assert read_packager_info(project_root).expo_server_ngrok_url is None


@pytest.mark.asyncio
async def test_address_in_use_kills_then_rerolls_hostname(context, project_root):
    set_packager_info(project_root, expo_server_port=19000, packager_port=19000)
    set_settings(project_root, url_randomness="ab-cde")
    client = FakeNgrokClient(outcomes=[address_in_use(), address_in_use()])
    service = make_service(context, project_root, client)

    await service.start()

    assert len(client.connects) == 3
    # one kill from the initial stop, one as the first remediation
    assert client.kills == 2
    new_randomness = read_settings(project_root).url_randomness
    assert new_randomness != "ab-cde"
    assert client.connects[0][1].startswith("ab-cde.")
    assert client.connects[2][1].startswith(f"{new_randomness}.")


@pytest.mark.asyncio
async def test_timeout_still_records_late_urls(context, project_root):
    set_packager_info(project_root, expo_server_port=19000, packager_port=19000)
    client = FakeNgrokClient(delay=context.config.tunnel_timeout + 0.3)
    service = make_service(context, project_root, client)

    with pytest.raises(TunnelTimeoutError) as excinfo:
        await service.start()
    assert excinfo.value.code == "TUNNEL_TIMEOUT"
    assert read_packager_info(project_root).expo_server_ngrok_url is None

    await asyncio.sleep(0.6)
    assert read_packager_info(project_root).expo_server_ngrok_url is not None


@pytest.mark.asyncio
async def test_stop_after_timeout_discards_late_urls(context, project_root):
    set_packager_info(project_root, expo_server_port=19000, packager_port=19001)
    client = FakeNgrokClient(delay=context.config.tunnel_timeout + 0.3)
    service = make_service(context, project_root, client)

    with pytest.raises(TunnelTimeoutError):
        await service.start()
    await service.stop()

    await asyncio.sleep(0.6)
    info = read_packager_info(project_root)
    assert (info.expo_server_ngrok_url, info.packager_ngrok_url, info.ngrok_pid) == (None, None, None)


@pytest.mark.asyncio
async def test_establishment_from_before_stop_is_not_persisted(context, project_root):
    set_packager_info(project_root, expo_server_port=19000, packager_port=19000)
    client = FakeNgrokClient()
    service = make_service(context, project_root, client)

    establishing = asyncio.create_task(service._establish(19000, 19000, "alice", None))
    await asyncio.sleep(0)
    await service.stop()

    with pytest.raises(TunnelError) as excinfo:
        await establishing
    assert excinfo.value.code == "TUNNEL_STOPPED"
    assert read_packager_info(project_root).expo_server_ngrok_url is None
    # one from stop(), one for the discarded tunnel
    assert client.kills == 2


@pytest.mark.asyncio
async def test_unrelated_failure_does_not_count_towards_reroll(context, project_root):
    set_packager_info(project_root, expo_server_port=19000, packager_port=19000)
    set_settings(project_root, url_randomness="ab-cde")
    client = FakeNgrokClient(outcomes=[PyngrokNgrokError("connection reset"), address_in_use()])
    service = make_service(context, project_root, client)

    await service.start()

    assert len(client.connects) == 3
    # the first address-in-use failure kills the tunnel process instead of rerolling
    assert client.kills == 2
    assert read_settings(project_root).url_randomness == "ab-cde"


@pytest.mark.asyncio
async def test_start_requires_running_servers(context, project_root):
    service = make_service(context, project_root, FakeNgrokClient())
    with pytest.raises(XDLError) as excinfo:
        await service.start()
    assert excinfo.value.code == "NO_PACKAGER_PORT"


@pytest.mark.asyncio
async def test_stop_kills_foreign_tunnel_process(context, ports, monkeypatch):
    killed = []
    monkeypatch.setattr(tunnel_service, "kill_pid", killed.append)
    set_packager_info(ports, ngrok_pid=999999, expo_server_ngrok_url="https://a.exp.direct", packager_ngrok_url="https://b.exp.direct")
    client = FakeNgrokClient()

    await make_service(context, ports, client).stop()

    assert killed == [999999]
    assert client.kills == 0
    info = read_packager_info(ports)
    assert (info.ngrok_pid, info.expo_server_ngrok_url, info.packager_ngrok_url) == (None, None, None)


@pytest.mark.asyncio
async def test_tunnel_status_is_reported(context, ports, records):
    client = FakeNgrokClient()
    service = make_service(context, ports, client)
    await service.start()

    for listener in client.listeners:
        listener(SimpleNamespace(msg="tunnel session started"))
        listener(SimpleNamespace(msg="failed to reconnect session, reconnecting"))

    messages = [r.message for r in records if r.tag.value == "tunnel"]
    assert "Tunnel connected." in messages
    assert TUNNEL_ISSUES_MESSAGE in messages

    await service.stop()
    assert client.listeners == []
