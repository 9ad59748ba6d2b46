import json
import logging
import os
import re
from enum import IntEnum
from pathlib import Path
from pydantic import BaseModel, Field
from xdl.common.logger import setup_logger
from xdl.core.config import SKIP_VALIDATION_TOKEN_ENV
from xdl.core.errors import ConfigurationError

logger = setup_logger("Config")

DEFAULT_ENTRY_POINT = "node_modules/expo/AppEntry.js"


class ProjectConfig(BaseModel):
    exp: dict = Field(default_factory=dict)
    pkg: dict = Field(default_factory=dict)
    config_path: str | None = None


def _load(path: Path) -> dict | None:
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        raise ConfigurationError("INVALID_JSON", f"Error parsing JSON file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError("INVALID_JSON", f"{path} must contain a JSON object")
    return data


def _installed_expo_sdk_version(project_root: Path) -> str | None:
    data = _load(project_root / "node_modules" / "expo" / "package.json")
    if not data or not data.get("version"):
        return None
    major = data["version"].split(".")[0]
    return f"{major}.0.0"


def read_config(project_root, missing_ok: bool = False) -> ProjectConfig:
    """
    Read the project's exp config from app.json, falling back to package.json's `exp` key.

    Args:
        project_root: Project directory.
        missing_ok: Return an empty config instead of raising when package.json is absent.
    """
    root = Path(project_root)
    pkg = _load(root / "package.json")
    if pkg is None:
        if missing_ok:
            return ProjectConfig()
        raise ConfigurationError("NO_PACKAGE_JSON", f"No package.json found in {root}")

    app_json = _load(root / "app.json")
    if app_json is not None:
        exp = dict(app_json.get("expo", app_json))
        config_path = str(root / "app.json")
    else:
        exp = dict(pkg.get("exp") or {})
        config_path = str(root / "package.json")

    exp.setdefault("name", pkg.get("name"))
    if not exp.get("slug") and exp.get("name"):
        exp["slug"] = re.sub(r"[^a-z0-9-]+", "-", str(exp["name"]).lower()).strip("-")
    exp.setdefault("version", pkg.get("version"))
    if not exp.get("sdkVersion"):
        sdk = _installed_expo_sdk_version(root)
        if sdk:
            exp["sdkVersion"] = sdk

    return ProjectConfig(exp=exp, pkg=pkg, config_path=config_path)


def _version_tuple(version: str) -> tuple[int, int, int]:
    parts = [int(p) for p in re.findall(r"\d+", str(version))[:3]]
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)


def gte_sdk_version(exp: dict, version: str) -> bool:
    sdk = exp.get("sdkVersion")
    if not sdk:
        return False
    if sdk == "UNVERSIONED":
        return True
    return _version_tuple(sdk) >= _version_tuple(version)


def lte_sdk_version(exp: dict, version: str) -> bool:
    sdk = exp.get("sdkVersion")
    if not sdk or sdk == "UNVERSIONED":
        return False
    return _version_tuple(sdk) <= _version_tuple(version)


def resolve_entry_point(project_root, platform: str | None = None, config: ProjectConfig | None = None) -> str:
    """Entry file relative to the project root."""
    root = Path(project_root)
    config = config or read_config(root, missing_ok=True)

    if config.exp.get("entryPoint"):
        return str(config.exp["entryPoint"])
    if config.pkg.get("main"):
        return str(config.pkg["main"])

    candidates = [f"index.{platform}.js"] if platform else []
    candidates.append("index.js")
    for candidate in candidates:
        if (root / candidate).exists():
            return candidate
    return DEFAULT_ENTRY_POINT


class DoctorResult(IntEnum):
    NO_ISSUES = 0
    WARNING = 1
    ERROR = 2
    FATAL = 3


def validate_project(project_root, project_logger=None) -> DoctorResult:
    """Lightweight project check run before serving manifests."""
    if os.getenv(SKIP_VALIDATION_TOKEN_ENV):
        return DoctorResult.NO_ISSUES

    def report(level: int, message: str):
        if project_logger is not None:
            project_logger.log("expo", level, message)
        else:
            logger.log(level, f"[Doctor] {message}")

    try:
        config = read_config(project_root)
    except ConfigurationError as e:
        report(logging.ERROR, e.message)
        return DoctorResult.FATAL

    if not config.exp.get("sdkVersion"):
        report(logging.ERROR, "Cannot determine which SDK version the project uses. Set `sdkVersion` or install `expo`.")
        return DoctorResult.ERROR

    if not config.exp.get("slug"):
        report(logging.WARNING, "The project has no `slug` or `name`.")
        return DoctorResult.WARNING

    return DoctorResult.NO_ISSUES
