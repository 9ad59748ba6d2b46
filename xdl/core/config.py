from dotenv import load_dotenv
load_dotenv()

import os
from pathlib import Path
from pydantic import BaseModel

# Environment variables read by the URL builder and manifest server
PACKAGER_PROXY_URL_ENV = "EXPO_PACKAGER_PROXY_URL"
MANIFEST_PROXY_URL_ENV = "EXPO_MANIFEST_PROXY_URL"
PACKAGER_HOSTNAME_ENVS = ("EXPO_PACKAGER_HOSTNAME", "REACT_NATIVE_PACKAGER_HOSTNAME")
SKIP_VALIDATION_TOKEN_ENV = "EXPO_SKIP_MANIFEST_VALIDATION_TOKEN"
ACCESS_TOKEN_ENV = "EXPO_TOKEN"

DEFAULT_EXPO_SERVER_PORT = 19000
DEFAULT_PACKAGER_PORT = 19001


def _env_flag(name: str) -> bool:
    value = os.getenv(name, "")
    return value.strip().lower() not in ("", "0", "false", "no")


class XDLConfig(BaseModel):
    api_scheme: str = "https"
    api_host: str = "exp.host"
    api_port: int | None = None
    offline: bool = False
    staging: bool = False
    debug: bool = False
    developer_tool: str = "expo-cli"
    home_directory: Path = Path.home() / ".expo"

    ngrok_domain: str = "exp.direct"
    ngrok_auth_token: str | None = None

    heartbeat_interval: float = 20.0
    tunnel_timeout: float = 10.0
    stop_timeout: float = 2.0
    packager_stop_timeout: float = 5.0
    packager_ready_timeout: float = 30.0
    packager_ready_interval: float = 0.1

    @property
    def api_base_url(self) -> str:
        port = f":{self.api_port}" if self.api_port else ""
        return f"{self.api_scheme}://{self.api_host}{port}/--/api/v2"

    @property
    def website_url(self) -> str:
        port = f":{self.api_port}" if self.api_port else ""
        return f"{self.api_scheme}://{self.api_host}{port}"


def load_config() -> XDLConfig:
    """Build the runtime configuration from the environment (and .env)."""
    config = XDLConfig(
        offline=_env_flag("EXPO_OFFLINE"),
        staging=_env_flag("EXPO_STAGING"),
        debug=_env_flag("EXPO_DEBUG"),
        ngrok_auth_token=os.getenv("EXPO_NGROK_AUTHTOKEN") or None,
    )

    if _env_flag("EXPO_LOCAL"):
        config.api_scheme = "http"
        config.api_host = "localhost"
        config.api_port = 3000
    elif config.staging:
        config.api_host = "staging.exp.host"

    home = os.getenv("EXPO_HOME") or os.getenv("__UNSAFE_EXPO_HOME_DIRECTORY")
    if home:
        config.home_directory = Path(home).expanduser()

    if os.getenv("XDL_HEARTBEAT_INTERVAL"):
        config.heartbeat_interval = float(os.getenv("XDL_HEARTBEAT_INTERVAL"))

    return config
