import asyncio
import copy
import json
import logging
import os
import platform
import re
import sys
from importlib.metadata import PackageNotFoundError, version
from typing import TYPE_CHECKING

from pydantic import ValidationError

from xdl.common.logger import setup_logger
from xdl.core.errors import ApiError, NetworkError
from xdl.schemas.logs import DeviceLogEntry, LogTag
from xdl.schemas.user import User
from xdl.services.api_client import ApiClient
from xdl.services.project_config import lte_sdk_version, read_config, resolve_entry_point
from xdl.services.project_settings import read_settings
from xdl.services.url_builder import (
    construct_bundle_query_params,
    construct_bundle_url,
    construct_debugger_host,
    construct_host_uri,
    construct_log_url,
    strip_js_extension,
)
from xdl.services.user_service import ANONYMOUS_USERNAME
from xdl.utils.network import strip_port

if TYPE_CHECKING:
    from xdl.context import XDLContext

logger = setup_logger("Manifest")

ENV_PREFIXES = ("REACT_NATIVE_", "EXPO_")
ENV_BLOCKLIST = frozenset({
    "EXPO_APPLE_PASSWORD",
    "EXPO_ANDROID_KEY_PASSWORD",
    "EXPO_ANDROID_KEYSTORE_PASSWORD",
    "EXPO_IOS_DIST_P12_PASSWORD",
    "EXPO_IOS_PUSH_P12_PASSWORD",
    "EXPO_CLI_PASSWORD",
})

ASSET_FIELDS = (
    "icon",
    "notification.icon",
    "splash.image",
    "loading.icon",
    "loading.backgroundImage",
    "ios.icon",
    "ios.splash.image",
    "ios.splash.tabletImage",
    "android.icon",
    "android.splash.image",
    "android.adaptiveIcon.foregroundImage",
    "android.adaptiveIcon.backgroundImage",
    "web.favicon",
)

FLIPPER_HACK = "React Native packager is running"
APP_STARTUP_PATTERN = re.compile(r'^Running (application|"[^"]*")( "[^"]*")? with appParams')
BUG_REPORTING_PREFIX = "BugReporting extraData:"


def should_expose_env(name: str) -> bool:
    return name.startswith(ENV_PREFIXES) and name not in ENV_BLOCKLIST


def manifest_env(environ=None) -> dict:
    environ = os.environ if environ is None else environ
    return {key: value for key, value in environ.items() if should_expose_env(key)}


def _get_path(data: dict, dotted: str):
    current = data
    for part in dotted.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _set_path(data: dict, dotted: str, value) -> None:
    parts = dotted.split(".")
    current = data
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def resolve_manifest_assets(manifest: dict, bundle_url: str) -> None:
    """Add `<field>Url` next to every local asset path so devices can fetch it from the bundler."""
    for field in ASSET_FIELDS:
        path = _get_path(manifest, field)
        if not isinstance(path, str) or not path or re.match(r"^https?://", path):
            continue
        relative = re.sub(r"^\./", "", path)
        _set_path(manifest, f"{field}Url", f"{bundle_url}/assets/{relative}")


def package_version() -> str:
    try:
        return version("xdl")
    except PackageNotFoundError:
        return "0.0.0"


class SignedManifestCache:
    """Last signed manifest, reused while the manifest string is unchanged."""

    def __init__(self):
        self._manifest_string: str | None = None
        self._signed: str | None = None

    def get(self, manifest_string: str) -> str | None:
        if self._manifest_string == manifest_string:
            return self._signed
        return None

    def put(self, manifest_string: str, signed: str) -> None:
        self._manifest_string = manifest_string
        self._signed = signed

    def clear(self) -> None:
        self._manifest_string = None
        self._signed = None


class ManifestService:
    def __init__(self, context: "XDLContext", project_root):
        self._context = context
        self.project_root = str(project_root)
        self._project_logger = context.project_logger(project_root)

    def host_info(self) -> dict:
        return {
            "host": self._context.user_settings.anonymous_identifier(),
            "server": "xdl",
            "serverVersion": package_version(),
            "serverDriver": self._context.config.developer_tool,
            "serverOS": sys.platform,
            "serverOSVersion": platform.release(),
        }

    def build_manifest(self, host: str | None, platform_name: str = "ios") -> dict:
        """
        The project config plus everything a device needs to load the bundle.

        Args:
            host: Host header of the request (port is ignored).
            platform_name: `ios` or `android`.
        """
        root = self.project_root
        hostname = strip_port(host)
        url_kwargs = {"offline": self._context.offline, "project_logger": self._project_logger}
        config = read_config(root)
        settings = read_settings(root)

        manifest = copy.deepcopy(config.exp)
        main_module_name = strip_js_extension(resolve_entry_point(root, platform_name, config))

        manifest["developer"] = {"tool": self._context.config.developer_tool, "projectRoot": root}
        manifest["packagerOpts"] = settings.to_json()
        manifest["mainModuleName"] = main_module_name
        manifest["__flipperHack"] = FLIPPER_HACK
        manifest["debuggerHost"] = construct_debugger_host(root, hostname, **url_kwargs)
        manifest["logUrl"] = construct_log_url(root, hostname, **url_kwargs)
        manifest["hostUri"] = construct_host_uri(root, hostname, **url_kwargs)

        if lte_sdk_version(manifest, "40.0.0"):
            manifest["env"] = manifest_env()

        bundle_url = construct_bundle_url(root, {"urlType": "http"}, hostname, **url_kwargs)
        query = construct_bundle_query_params(
            root, {"dev": settings.dev, "strict": settings.strict, "minify": settings.minify}
        )
        manifest["bundleUrl"] = f"{bundle_url}/{main_module_name}.bundle?platform={platform_name}&{query}"
        resolve_manifest_assets(manifest, bundle_url)
        return manifest

    async def get_manifest_response(self, host: str | None, platform_name: str = "ios", accept_signature: bool = False) -> tuple[str, dict, dict]:
        """Returns (response body, manifest, host info)."""
        manifest = self.build_manifest(host, platform_name)

        user = None
        if not self._context.offline:
            user = await self._context.user_manager.get_current_user()
        if user is None:
            anonymous_id = self._context.user_settings.anonymous_identifier()
            manifest["id"] = f"@{ANONYMOUS_USERNAME}/{manifest.get('slug')}-{anonymous_id}"

        manifest_string = json.dumps(manifest)
        if accept_signature:
            if user is not None and not self._context.offline:
                manifest_string = await self.sign_manifest(manifest, manifest_string, user)
            else:
                manifest_string = unsigned_envelope(manifest_string)
        return manifest_string, manifest, self.host_info()

    async def sign_manifest(self, manifest: dict, manifest_string: str, user: User) -> str:
        cache = self._context.signed_manifest_cache
        cached = cache.get(manifest_string)
        if cached is not None:
            return cached

        owner = manifest.get("owner")
        client = ApiClient.for_user(self._context.config, user)
        payload = {
            "args": {"remoteUsername": owner or user.username, "remotePackageName": manifest.get("slug")},
            "manifest": manifest,
        }
        try:
            result = await asyncio.to_thread(client.post, "manifest/sign", payload)
        except ApiError as e:
            if e.code == "UNAUTHORIZED_ERROR" and owner and owner != user.username:
                self._project_logger.warning(
                    LogTag.EXPO,
                    f"This project belongs to the @{owner} account, but you are logged in as @{user.username}. "
                    "Switching to offline mode.",
                )
                self._context.go_offline()
                return unsigned_envelope(manifest_string)
            raise
        except NetworkError:
            self._project_logger.warning(LogTag.EXPO, "Unable to reach servers. Falling back to offline mode.")
            self._context.go_offline()
            return unsigned_envelope(manifest_string)

        signed = (result or {}).get("response")
        if not signed:
            raise ApiError("INVALID_SIGNATURE", "The server returned an empty signed manifest")
        signed = signed if isinstance(signed, str) else json.dumps(signed)
        cache.put(manifest_string, signed)
        return signed

    def handle_device_logs(self, device_id: str, device_name: str, logs: list) -> None:
        for raw in logs:
            try:
                entry = DeviceLogEntry.model_validate(raw)
            except ValidationError:
                logger.debug(f"[Manifest] Dropping malformed device log entry: {raw!r}")
                continue

            fields = {"device_id": device_id, "device_name": device_name, "group_depth": entry.group_depth}
            body = entry.body

            if body and body[0] == BUG_REPORTING_PREFIX:
                self._project_logger.debug(LogTag.DEVICE, json.dumps(body[1:]), **fields)
                continue

            message = " ".join(part if isinstance(part, str) else json.dumps(part) for part in body)
            if APP_STARTUP_PATTERN.match(message):
                self._project_logger.info(LogTag.DEVICE, f"Running application on {device_name}.", **fields)
                continue

            self._project_logger.log(LogTag.DEVICE, device_log_level(entry.level), message, **fields)


def unsigned_envelope(manifest_string: str) -> str:
    return json.dumps({"manifestString": manifest_string, "signature": "UNSIGNED"})


def device_log_level(level: str) -> int:
    return {
        "error": logging.ERROR,
        "warn": logging.WARNING,
        "debug": logging.DEBUG,
    }.get(level, logging.INFO)
