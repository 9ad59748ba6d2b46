import stat
import pytest
from xdl.services.adb_service import AdbService
from xdl.services.project_settings import set_packager_info

FAKE_ADB = """#!/bin/sh
echo "$@" >> "{log}"
if [ "$1" = "devices" ]; then
  printf 'List of devices attached\\nemulator-5554\\tdevice\\nR58M\\tunauthorized\\n'
fi
"""


@pytest.fixture
def fake_adb(tmp_path):
    log = tmp_path / "adb.log"
    script = tmp_path / "adb"
    script.write_text(FAKE_ADB.format(log=log))
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return AdbService(str(script)), log


@pytest.mark.asyncio
async def test_only_ready_devices_are_listed(fake_adb):
    adb, _ = fake_adb
    assert await adb.attached_devices() == ["emulator-5554"]


@pytest.mark.asyncio
async def test_reverse_forwards_both_ports(fake_adb, project_root):
    adb, log = fake_adb
    set_packager_info(project_root, expo_server_port=19000, packager_port=19001)

    assert await adb.start_reverse(project_root) is True
    await adb.stop_reverse(project_root)

    calls = [line for line in log.read_text().splitlines() if line != "devices"]
    assert calls == [
        "-s emulator-5554 reverse tcp:19000 tcp:19000",
        "-s emulator-5554 reverse tcp:19001 tcp:19001",
        "-s emulator-5554 reverse --remove tcp:19000",
        "-s emulator-5554 reverse --remove tcp:19001",
    ]


@pytest.mark.asyncio
async def test_missing_adb_is_a_no_op(project_root, monkeypatch):
    monkeypatch.setattr("shutil.which", lambda name: None)
    adb = AdbService()
    assert not adb.available
    assert await adb.start_reverse(project_root) is False
