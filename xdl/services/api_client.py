import requests as req
from xdl.common.logger import setup_logger
from xdl.core.config import XDLConfig
from xdl.core.errors import ApiError, NetworkError

logger = setup_logger("Api")

REQUEST_TIMEOUT = 20


class ApiClient:
  """Blocking client for the v2 API. Call it through asyncio.to_thread from async code."""

  def __init__(self, config: XDLConfig, session_secret: str | None = None, access_token: str | None = None):
    self._config = config
    self.session_secret = session_secret
    self.access_token = access_token

  @classmethod
  def for_user(cls, config: XDLConfig, user) -> "ApiClient":
    if user is None:
      return cls(config)
    return cls(config, session_secret=user.session_secret, access_token=user.access_token)

  def _headers(self) -> dict:
    headers = {"Exponent-Client": self._config.developer_tool}
    if self.access_token:
      headers["Authorization"] = f"Bearer {self.access_token}"
    elif self.session_secret:
      headers["Expo-Session"] = self.session_secret
    return headers

  def _get_error_msg(self, resp: req.Response) -> str:
    try:
      data = resp.json()
      return str(data.get("error") or data)
    except ValueError:
      return resp.text[:100]

  def request(self, method: str, path: str, params: dict | None = None, json: dict | None = None):
    url = f"{self._config.api_base_url}/{path.lstrip('/')}"
    try:
      resp = req.request(method, url, params=params, json=json, headers=self._headers(), timeout=REQUEST_TIMEOUT)
    except (req.ConnectionError, req.Timeout) as e:
      logger.debug(f"[Api] {method} {path} unreachable | {e}")
      raise NetworkError(f"Could not reach {self._config.api_host}: {e}")

    try:
      body = resp.json()
    except ValueError:
      raise ApiError("INVALID_JSON", f"Unexpected response from server: {resp.text[:100]}", resp.status_code)

    errors = body.get("errors") if isinstance(body, dict) else None
    if errors:
      first = errors[0]
      raise ApiError(
        first.get("code") or "API_ERROR",
        first.get("message") or "Unknown API error",
        resp.status_code,
        first.get("details"),
      )
    if resp.status_code >= 400:
      raise ApiError(f"HTTP_{resp.status_code}", self._get_error_msg(resp), resp.status_code)

    return body.get("data") if isinstance(body, dict) else body

  def get(self, path: str, params: dict | None = None):
    return self.request("GET", path, params=params)

  def post(self, path: str, data: dict | None = None, params: dict | None = None):
    return self.request("POST", path, params=params, json=data or {})
