import os
import uuid
from pathlib import Path
from typing import Any
from xdl.core.config import ACCESS_TOKEN_ENV, XDLConfig
from xdl.utils.json_storage import merge_json, read_json, write_json


class UserSettings:
    """The per-user state file (`~/.expo/state.json`)."""

    def __init__(self, config: XDLConfig):
        self._config = config
        filename = "staging-state.json" if config.staging else "state.json"
        self._path = Path(config.home_directory) / filename

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> dict:
        return read_json(self._path)

    def get(self, key: str, default: Any = None) -> Any:
        return self.read().get(key, default)

    def set(self, key: str, value: Any) -> dict:
        return merge_json(self._path, {key: value})

    def delete_key(self, key: str) -> dict:
        data = self.read()
        data.pop(key, None)
        write_json(self._path, data)
        return data

    def access_token(self) -> str | None:
        return os.getenv(ACCESS_TOKEN_ENV) or None

    def anonymous_identifier(self) -> str:
        """Stable per-machine id used when nobody is signed in."""
        client_id = self.get("clientId")
        if not client_id:
            client_id = str(uuid.uuid4())
            self.set("clientId", client_id)
        return client_id
