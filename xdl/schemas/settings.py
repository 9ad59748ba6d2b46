from enum import Enum
from pydantic import BaseModel, ConfigDict, Field

class HostType(str, Enum):
  LOCALHOST = "localhost"
  LAN = "lan"
  TUNNEL = "tunnel"

class LanType(str, Enum):
  IP = "ip"
  HOSTNAME = "hostname"

class UrlType(str, Enum):
  EXP = "exp"
  HTTP = "http"
  REDIRECT = "redirect"
  NO_PROTOCOL = "no-protocol"
  CUSTOM = "custom"

class ProjectStatus(str, Enum):
  RUNNING = "running"
  ILL = "ill"
  EXITED = "exited"

class _CamelModel(BaseModel):
  model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

  def to_json(self) -> dict:
    return self.model_dump(by_alias=True, mode="json")

class ProjectSettings(_CamelModel):
  """Contents of .expo/settings.json"""
  host_type: HostType = Field(HostType.LAN, alias="hostType")
  lan_type: LanType = Field(LanType.IP, alias="lanType")
  url_type: UrlType | None = Field(None, alias="urlType")
  dev: bool = True
  strict: bool = False
  minify: bool = False
  https: bool = False
  dev_client: bool = Field(False, alias="devClient")
  scheme: str | None = None
  url_randomness: str | None = Field(None, alias="urlRandomness")

class PackagerInfo(_CamelModel):
  """Contents of .expo/packager-info.json"""
  packager_port: int | None = Field(None, alias="packagerPort")
  expo_server_port: int | None = Field(None, alias="expoServerPort")
  packager_pid: int | None = Field(None, alias="packagerPid")
  packager_ngrok_url: str | None = Field(None, alias="packagerNgrokUrl")
  expo_server_ngrok_url: str | None = Field(None, alias="expoServerNgrokUrl")
  ngrok_pid: int | None = Field(None, alias="ngrokPid")

class UrlOptions(_CamelModel):
  """Per-call overrides accepted by the URL builder. Unknown keys are rejected."""
  model_config = ConfigDict(populate_by_name=True, use_enum_values=True, extra="forbid")

  url_type: UrlType | None = Field(None, alias="urlType")
  host_type: HostType | None = Field(None, alias="hostType")
  lan_type: LanType | None = Field(None, alias="lanType")
  dev: bool | None = None
  strict: bool | None = None
  minify: bool | None = None
  https: bool | None = None
  dev_client: bool | None = Field(None, alias="devClient")
  scheme: str | None = None
  url_randomness: str | None = Field(None, alias="urlRandomness")
