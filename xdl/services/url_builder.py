"""
URL construction for a running project.

Every URL handed to a device, a browser or the bundler is derived here from
three inputs: the per-call options, the persisted project settings and the
persisted packager info. Nothing in this module starts or stops anything.
"""
import os
import random
import re
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote, urlencode, urlparse

from pydantic import ValidationError

from xdl.common.logger import setup_logger
from xdl.core.config import MANIFEST_PROXY_URL_ENV, PACKAGER_HOSTNAME_ENVS, PACKAGER_PROXY_URL_ENV
from xdl.core.errors import ConfigurationError, XDLError
from xdl.schemas.logs import LogTag
from xdl.schemas.settings import HostType, LanType, UrlOptions, UrlType
from xdl.services.project_config import gte_sdk_version, lte_sdk_version, read_config
from xdl.services.project_settings import read_packager_info, read_settings
from xdl.utils.network import lan_ip_address, os_hostname

if TYPE_CHECKING:
    from xdl.services.project_logs import ProjectLogger

logger = setup_logger("Url")

REDIRECT_SERVICE_URL = "https://exp.host/--/to-exp/"
LOCALHOST = "localhost"
RANDOMNESS_ALPHABET = "23456789qwertyuipasdfghjkzxcvbnm"
ASSET_PLUGIN_PATH = Path("node_modules") / "expo" / "tools" / "hashAssetFiles"
TUNNEL_URL_NOT_FOUND = "tunnel-url-not-found"
TUNNEL_URL_NOT_FOUND_MESSAGE = "Tunnel URL not found, falling back to localhost."


def _describe_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        field = ".".join(str(part) for part in item["loc"])
        problems.append(f"{field}={item.get('input')!r} ({item['msg']})")
    return "; ".join(problems)


def validate_options(opts: dict | None) -> dict:
    """Check `opts` and return only the keys that were actually given, camelCased."""
    if not opts:
        return {}
    try:
        validated = UrlOptions.model_validate(opts)
    except ValidationError as e:
        raise ConfigurationError("INVALID_OPTIONS", f"Invalid URL options: {_describe_validation_error(e)}")
    return validated.model_dump(by_alias=True, mode="json", exclude_unset=True)


def resolve_options(project_root, opts: dict | None = None) -> dict:
    """Per-call options layered over the persisted project settings."""
    given = validate_options(opts)
    merged = read_settings(project_root).to_json()
    # urlType is only ever a per-call choice
    merged["urlType"] = None
    merged.update(given)
    return merged


def resolve_protocol(project_root, url_type: str | None = None, scheme: str | None = None) -> str | None:
    if url_type == UrlType.HTTP:
        return "http"
    if url_type == UrlType.NO_PROTOCOL:
        return None
    if url_type == UrlType.CUSTOM:
        if not scheme:
            raise ConfigurationError("INVALID_OPTIONS", "urlType 'custom' requires a scheme")
        return scheme

    protocol = "exp"
    exp = read_config(project_root, missing_ok=True).exp
    detach = exp.get("detach")
    if detach:
        schemes = exp.get("scheme")
        if not isinstance(schemes, list):
            schemes = [schemes]
        valid = [s for s in schemes if isinstance(s, str) and s]
        if valid and gte_sdk_version(exp, "27.0.0"):
            protocol = valid[0]
        elif isinstance(detach, dict) and detach.get("scheme"):
            protocol = detach["scheme"]
    return protocol


def lan_hostname(lan_type: str | None, request_hostname: str | None = None) -> str:
    for name in PACKAGER_HOSTNAME_ENVS:
        value = os.getenv(name, "").strip()
        if value:
            return value
    if lan_type == LanType.IP:
        return request_hostname or lan_ip_address() or os_hostname()
    return os_hostname()


def join_url_components(protocol: str | None, hostname: str | None, port: int | str | None) -> str:
    if not hostname:
        raise XDLError("NO_HOSTNAME", "Cannot create URL without a hostname")
    url = f"{protocol}://" if protocol else ""
    return f"{url}{hostname}:{port or 80}"


def create_redirect_url(url: str) -> str:
    return f"{REDIRECT_SERVICE_URL}{quote(url, safe='')}"


def construct_url(
    project_root,
    opts: dict | None,
    is_packager: bool,
    request_hostname: str | None = None,
    *,
    offline: bool = False,
    project_logger: "ProjectLogger | None" = None,
) -> str:
    """
    Build the manifest or packager URL for a project.

    Args:
        project_root: Project directory.
        opts: Per-call overrides (urlType, hostType, lanType, dev, strict, minify, ...).
        is_packager: Target the bundler rather than the manifest server.
        request_hostname: Hostname the device used to reach us, if known.
        offline: Treat tunnels as unavailable.
        project_logger: Receives the sticky "tunnel URL not found" notification
            instead of the console logger.

    Returns:
        The URL string. Pure function of its inputs and the persisted state.
    """
    options = resolve_options(project_root, opts)
    info = read_packager_info(project_root)
    local_port = info.packager_port if is_packager else info.expo_server_port

    protocol = resolve_protocol(project_root, options.get("urlType"), options.get("scheme"))
    host_type = options.get("hostType")

    proxy_url = os.getenv(PACKAGER_PROXY_URL_ENV if is_packager else MANIFEST_PROXY_URL_ENV)
    if proxy_url:
        parsed = urlparse(proxy_url)
        hostname = parsed.hostname
        port = parsed.port
        if parsed.scheme == "https":
            if protocol == "http":
                protocol = "https"
            port = port or 443
    elif host_type == HostType.LOCALHOST or request_hostname == LOCALHOST:
        hostname, port = LOCALHOST, local_port
    elif host_type == HostType.LAN or offline:
        hostname, port = lan_hostname(options.get("lanType"), request_hostname), local_port
    else:
        ngrok_url = info.packager_ngrok_url if is_packager else info.expo_server_ngrok_url
        if not ngrok_url:
            if project_logger is not None:
                project_logger.warning(LogTag.EXPO, TUNNEL_URL_NOT_FOUND_MESSAGE, notification_id=TUNNEL_URL_NOT_FOUND)
            else:
                logger.warning(f"[Url] {TUNNEL_URL_NOT_FOUND_MESSAGE}")
            hostname, port = LOCALHOST, local_port
        else:
            if project_logger is not None:
                project_logger.clear_notification(TUNNEL_URL_NOT_FOUND)
            parsed = urlparse(ngrok_url)
            hostname, port = parsed.hostname, parsed.port

    url = join_url_components(protocol, hostname, port)

    if options.get("urlType") == UrlType.REDIRECT:
        return create_redirect_url(url)
    return url


def construct_manifest_url(project_root, opts: dict | None = None, request_hostname: str | None = None, **kwargs) -> str:
    return construct_url(project_root, opts, False, request_hostname, **kwargs)


def construct_bundle_url(project_root, opts: dict | None = None, request_hostname: str | None = None, **kwargs) -> str:
    return construct_url(project_root, opts, True, request_hostname, **kwargs)


def construct_host_uri(project_root, request_hostname: str | None = None, **kwargs) -> str:
    """Manifest URL with the protocol stripped, e.g. `192.168.1.5:19000`."""
    url = construct_manifest_url(project_root, None, request_hostname, **kwargs)
    return url.split("://", 1)[-1]


def construct_log_url(project_root, request_hostname: str | None = None, **kwargs) -> str:
    return construct_manifest_url(project_root, {"urlType": "http"}, request_hostname, **kwargs) + "/logs"


def construct_debugger_host(project_root, request_hostname: str | None = None, **kwargs) -> str:
    return construct_bundle_url(project_root, {"urlType": "no-protocol"}, request_hostname, **kwargs)


def construct_dev_client_url(project_root, opts: dict | None = None, request_hostname: str | None = None, **kwargs) -> str:
    """Deep link that opens the project in a development build."""
    options = resolve_options(project_root, opts)
    scheme = options.get("scheme")
    if not scheme:
        raise ConfigurationError(
            "NO_DEV_CLIENT_SCHEME",
            "No scheme specified for the development client. Set `scheme` in project settings.",
        )
    manifest_url = construct_manifest_url(
        project_root, {**(opts or {}), "urlType": "http"}, request_hostname, **kwargs
    )
    return f"{scheme}://expo-development-client/?url={quote(manifest_url, safe='')}"


def construct_deep_link(project_root, opts: dict | None = None, request_hostname: str | None = None, **kwargs) -> str:
    options = resolve_options(project_root, opts)
    if options.get("devClient"):
        return construct_dev_client_url(project_root, opts, request_hostname, **kwargs)
    return construct_manifest_url(project_root, opts, request_hostname, **kwargs)


def _query_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def construct_bundle_query_params(project_root, opts: dict) -> str:
    """
    Query string for bundle/map/asset requests.

    `opts` keys: `dev` (required), `strict` and `minify` (only sent when present).
    """
    params = {"dev": bool(opts.get("dev")), "hot": False}
    if "strict" in opts:
        params["strict"] = bool(opts["strict"])
    if "minify" in opts:
        params["minify"] = bool(opts["minify"])

    exp = read_config(project_root, missing_ok=True).exp
    if not gte_sdk_version(exp, "33.0.0"):
        supports_asset_plugins = gte_sdk_version(exp, "11.0.0")
        if supports_asset_plugins and lte_sdk_version(exp, "32.0.0"):
            params["assetPlugin"] = quote(str(Path(project_root) / ASSET_PLUGIN_PATH), safe="")
        elif not supports_asset_plugins:
            params["includeAssetFileHashes"] = True

    return urlencode({key: _query_value(value) for key, value in params.items()})


def strip_js_extension(entry_point: str) -> str:
    return re.sub(r"\.js$", "", entry_point)


def construct_url_with_extension(project_root, entry_point: str, ext: str, request_hostname: str | None = None, metro_query: dict | None = None) -> str:
    bundle_url = construct_bundle_url(
        project_root, {"hostType": "localhost", "urlType": "http"}, request_hostname
    )
    main_module = strip_js_extension(entry_point)
    query = construct_bundle_query_params(project_root, metro_query or {"dev": False, "minify": True})
    return f"{bundle_url}/{main_module}.{ext}?{query}"


def construct_publish_url(project_root, entry_point: str, request_hostname: str | None = None, metro_query: dict | None = None) -> str:
    return construct_url_with_extension(project_root, entry_point, "bundle", request_hostname, metro_query)


def construct_source_map_url(project_root, entry_point: str, request_hostname: str | None = None) -> str:
    return construct_url_with_extension(project_root, entry_point, "map", request_hostname)


def construct_assets_url(project_root, entry_point: str, request_hostname: str | None = None) -> str:
    return construct_url_with_extension(project_root, entry_point, "assets", request_hostname)


def domainify(value: str) -> str:
    """Lowercase, replace anything not [a-z0-9-] with '-', trim dashes."""
    return re.sub(r"[^a-z0-9\-]", "-", value.lower()).strip("-")


def random_identifier(length: int = 6) -> str:
    return "".join(random.choice(RANDOMNESS_ALPHABET) for _ in range(length))


def some_randomness() -> str:
    return "-".join([random_identifier(2), random_identifier(3)])
