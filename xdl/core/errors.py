from typing import Any


class XDLError(Exception):
    """Base error carrying a stable machine-readable code."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return self.message


class ConfigurationError(XDLError):
    """Invalid options or project configuration. Never retried."""


class TunnelError(XDLError):
    def __init__(self, message: str, provider_error: dict[str, Any] | None = None, code: str = "NGROK_ERROR"):
        super().__init__(code, message)
        self.provider_error = provider_error or {}


class TunnelTimeoutError(TunnelError):
    def __init__(self, message: str = "Starting tunnels timed out"):
        super().__init__(message, code="TUNNEL_TIMEOUT")


class PackagerError(XDLError):
    pass


class PackagerTimeoutError(PackagerError):
    def __init__(self, message: str):
        super().__init__("PACKAGER_TIMEOUT", message)


class PackagerExitError(PackagerError):
    def __init__(self, returncode: int | None):
        super().__init__(
            "PACKAGER_EXITED",
            f"Metro Bundler process exited with code {returncode}",
        )
        self.returncode = returncode


class ApiError(XDLError):
    """The API answered, but with an error or an unreadable body."""

    def __init__(self, code: str, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(code, message)
        self.status_code = status_code
        self.details = details


class NetworkError(XDLError):
    """The API could not be reached at all."""

    def __init__(self, message: str):
        super().__init__("NETWORK_ERROR", message)
