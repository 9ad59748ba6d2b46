import json
import pytest
from xdl.context import XDLContext
from xdl.core.config import XDLConfig

PROXY_AND_HOST_ENVS = (
    "EXPO_PACKAGER_PROXY_URL",
    "EXPO_MANIFEST_PROXY_URL",
    "EXPO_PACKAGER_HOSTNAME",
    "REACT_NATIVE_PACKAGER_HOSTNAME",
    "EXPO_TOKEN",
    "EXPO_SKIP_MANIFEST_VALIDATION_TOKEN",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in PROXY_AND_HOST_ENVS:
        monkeypatch.delenv(name, raising=False)


def write_project(root, exp: dict | None = None, pkg: dict | None = None):
    root.mkdir(parents=True, exist_ok=True)
    (root / "package.json").write_text(json.dumps(pkg or {"name": "my-app", "version": "1.0.0"}))
    expo = {"name": "My App", "slug": "my-app", "sdkVersion": "44.0.0"}
    expo.update(exp or {})
    (root / "app.json").write_text(json.dumps({"expo": expo}))
    return root


@pytest.fixture
def project_root(tmp_path):
    return write_project(tmp_path / "MyApp")


@pytest.fixture
def config(tmp_path):
    return XDLConfig(
        home_directory=tmp_path / "home",
        stop_timeout=0.5,
        tunnel_timeout=0.5,
        packager_ready_timeout=1.0,
        packager_stop_timeout=2.0,
    )


@pytest.fixture
def context(config):
    return XDLContext(config)


@pytest.fixture
def records(context, project_root):
    """Every structured log record emitted for the test project."""
    collected = []
    context.project_logger(project_root).attach(collected.append)
    return collected
