from pathlib import Path
from pydantic import ValidationError
from xdl.common.logger import setup_logger
from xdl.schemas.settings import PackagerInfo, ProjectSettings, ProjectStatus
from xdl.utils.json_storage import merge_json, read_json, write_json

logger = setup_logger("Settings")

PROJECT_DIRECTORY = ".expo"
LEGACY_PROJECT_DIRECTORY = ".exponent"
SETTINGS_FILE = "settings.json"
PACKAGER_INFO_FILE = "packager-info.json"

PROJECT_SETTINGS_DEFAULTS = ProjectSettings().to_json()
PACKAGER_INFO_FIELDS = tuple(PackagerInfo.model_fields)

README_TEXT = """> Why do I have a folder named ".expo" in my project?

The ".expo" folder is created when a development session is started in your project.

> What do the files contain?

- "packager-info.json": contains port numbers and process PIDs used to serve the application to the mobile device/simulator.
- "settings.json": contains the server configuration used to serve the application manifest.

> Should I commit the ".expo" folder?

No, you should not share the ".expo" folder. It does not contain any information that is relevant for other developers working on the project, it is specific to your machine.

Upon project creation, the ".expo" folder is already added to your ".gitignore" file.
"""


def dot_expo_project_directory(project_root: str | Path) -> Path:
    """Return `<root>/.expo`, creating it (and migrating `.exponent`) when needed."""
    root = Path(project_root)
    directory = root / PROJECT_DIRECTORY
    legacy = root / LEGACY_PROJECT_DIRECTORY

    if legacy.is_dir() and not directory.exists():
        legacy.rename(directory)
        logger.debug(f"[Settings] Migrated {legacy} -> {directory}")

    directory.mkdir(parents=True, exist_ok=True)

    readme = directory / "README.md"
    if not readme.exists():
        readme.write_text(README_TEXT, encoding="utf-8")
    return directory


def _settings_path(project_root) -> Path:
    return dot_expo_project_directory(project_root) / SETTINGS_FILE


def _packager_info_path(project_root) -> Path:
    return dot_expo_project_directory(project_root) / PACKAGER_INFO_FILE


def _migrate(data: dict) -> dict:
    if data.get("hostType") == "ngrok":
        # "ngrok" was renamed to "tunnel"
        data["hostType"] = "tunnel"
    return data


def _aliases(model, fields: dict) -> dict:
    """Translate snake_case field names to the camelCase keys stored on disk."""
    out = {}
    for name, value in fields.items():
        if name not in model.model_fields:
            raise ValueError(f"Unknown {model.__name__} field: {name}")
        out[model.model_fields[name].alias or name] = value
    return out


def read_settings(project_root) -> ProjectSettings:
    path = _settings_path(project_root)
    if not path.exists():
        write_json(path, PROJECT_SETTINGS_DEFAULTS)
        return ProjectSettings()

    data = _migrate(read_json(path, PROJECT_SETTINGS_DEFAULTS))
    try:
        return ProjectSettings.model_validate({**PROJECT_SETTINGS_DEFAULTS, **data})
    except ValidationError as e:
        logger.warning(f"[Settings] Invalid {path}, using defaults | {e.error_count()} error(s)")
        return ProjectSettings()


def set_settings(project_root, **fields) -> ProjectSettings:
    """Shallow-merge `fields` (snake_case names) into settings.json."""
    partial = _aliases(ProjectSettings, fields)
    # Only the given keys are validated and written; the rest of the stored document is left as is
    checked = ProjectSettings.model_validate({**PROJECT_SETTINGS_DEFAULTS, **partial}).to_json()
    merge_json(_settings_path(project_root), {key: checked[key] for key in partial}, PROJECT_SETTINGS_DEFAULTS)
    return read_settings(project_root)


def read_packager_info(project_root) -> PackagerInfo:
    data = read_json(_packager_info_path(project_root))
    try:
        return PackagerInfo.model_validate(data)
    except ValidationError:
        logger.warning(f"[Settings] Ignoring malformed {PACKAGER_INFO_FILE}")
        return PackagerInfo()


def set_packager_info(project_root, **fields) -> PackagerInfo:
    """Shallow-merge `fields` (snake_case names) into packager-info.json."""
    partial = _aliases(PackagerInfo, fields)
    data = merge_json(_packager_info_path(project_root), partial)
    return PackagerInfo.model_validate(data)


def reset_packager_info(project_root) -> PackagerInfo:
    return set_packager_info(project_root, **{name: None for name in PACKAGER_INFO_FIELDS})


def current_status(project_root) -> ProjectStatus:
    """Infer the session status purely from the persisted ports."""
    info = read_packager_info(project_root)
    if info.packager_port and info.expo_server_port:
        return ProjectStatus.RUNNING
    if info.packager_port or info.expo_server_port:
        return ProjectStatus.ILL
    return ProjectStatus.EXITED
