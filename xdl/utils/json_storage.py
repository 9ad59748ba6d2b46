from pathlib import Path
import copy
import json
import os
from xdl.common.logger import setup_logger

logger = setup_logger("Storage")

def write_json(path: Path, data: dict) -> None:
  path.parent.mkdir(parents=True, exist_ok=True)
  tmp = path.with_name(path.name + ".tmp")

  with tmp.open("w", encoding="utf-8") as f:
    json.dump(data, f, ensure_ascii=False, indent=2)

  os.replace(tmp, path)

def read_json(path: Path, default: dict | None = None) -> dict:
  """Read a JSON object; a missing or corrupt file yields a copy of `default`."""
  fallback = copy.deepcopy(default) if default is not None else {}
  if not path.exists():
    return fallback
  try:
    with path.open("r", encoding="utf-8") as f:
      data = json.load(f)
  except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
    logger.warning(f"[Storage] Ignoring unreadable {path} | {e}")
    return fallback
  if not isinstance(data, dict):
    logger.warning(f"[Storage] Ignoring {path}, expected a JSON object")
    return fallback
  return data

def merge_json(path: Path, partial: dict, default: dict | None = None) -> dict:
  """Shallow-merge `partial` into the stored document and write it back."""
  data = {**read_json(path, default), **partial}
  write_json(path, data)
  return data
