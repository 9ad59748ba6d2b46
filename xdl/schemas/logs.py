import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from pydantic import BaseModel, Field

class LogTag(str, Enum):
  EXPO = "expo"
  METRO = "metro"
  DEVICE = "device"
  TUNNEL = "tunnel"

class LogRecord(BaseModel):
  tag: LogTag
  level: int = logging.INFO
  message: str
  project_root: str
  notification_id: str | None = None
  fields: dict[str, Any] = Field(default_factory=dict)
  time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class DeviceLogEntry(BaseModel):
  """One item of the array a device POSTs to /logs."""
  level: str = "info"
  body: list[Any] = Field(default_factory=list)
  include_stack: bool = Field(False, alias="includeStack")
  group_depth: int | None = Field(None, alias="groupDepth")
