import pytest
import requests as req
from xdl.core.errors import ApiError, NetworkError
from xdl.services import api_client
from xdl.services.api_client import ApiClient


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else ""

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


@pytest.fixture
def sent(monkeypatch):
    state = {"response": FakeResponse(body={"data": {"ok": True}}), "calls": []}

    def request(method, url, **kwargs):
        state["calls"].append((method, url, kwargs))
        if isinstance(state["response"], Exception):
            raise state["response"]
        return state["response"]

    monkeypatch.setattr(api_client.req, "request", request)
    return state


def test_returns_data_and_sends_session(config, sent):
    client = ApiClient(config, session_secret="s3cret")
    assert client.post("auth/userProfileAsync") == {"ok": True}

    method, url, kwargs = sent["calls"][0]
    assert method == "POST"
    assert url == "https://exp.host/--/api/v2/auth/userProfileAsync"
    assert kwargs["headers"]["Expo-Session"] == "s3cret"
    assert kwargs["headers"]["Exponent-Client"] == "expo-cli"


def test_access_token_wins_over_session(config, sent):
    ApiClient(config, session_secret="s", access_token="tok").get("x")
    headers = sent["calls"][0][2]["headers"]
    assert headers["Authorization"] == "Bearer tok"
    assert "Expo-Session" not in headers


def test_error_payload_is_raised(config, sent):
    sent["response"] = FakeResponse(status_code=200, body={"errors": [{"code": "UNAUTHORIZED_ERROR", "message": "nope"}]})
    with pytest.raises(ApiError) as excinfo:
        ApiClient(config).post("manifest/sign")
    assert excinfo.value.code == "UNAUTHORIZED_ERROR"
    assert str(excinfo.value) == "nope"


def test_http_errors_and_bad_bodies(config, sent):
    sent["response"] = FakeResponse(status_code=503, body={"error": "maintenance"})
    with pytest.raises(ApiError) as excinfo:
        ApiClient(config).get("status")
    assert excinfo.value.code == "HTTP_503"
    assert excinfo.value.status_code == 503

    sent["response"] = FakeResponse(status_code=502, text="<html>bad gateway</html>")
    with pytest.raises(ApiError) as excinfo:
        ApiClient(config).get("status")
    assert excinfo.value.code == "INVALID_JSON"


def test_unreachable_server(config, sent):
    sent["response"] = req.ConnectionError("refused")
    with pytest.raises(NetworkError):
        ApiClient(config).get("status")
