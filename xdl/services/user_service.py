import asyncio
import re
from typing import TYPE_CHECKING
from xdl.common.logger import setup_logger
from xdl.core.errors import ApiError, NetworkError, XDLError
from xdl.schemas.user import StoredAuth, User
from xdl.services.api_client import ApiClient

if TYPE_CHECKING:
    from xdl.context import XDLContext

logger = setup_logger("User")

ANONYMOUS_USERNAME = "anonymous"
UNAUTHORIZED_CODES = ("UNAUTHORIZED", "UNAUTHORIZED_ERROR")


def _camel_case(key: str) -> str:
    return re.sub(r"_([a-z0-9])", lambda m: m.group(1).upper(), key)


def _camel_keys(data):
    if isinstance(data, dict):
        return {_camel_case(k): _camel_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_camel_keys(v) for v in data]
    return data


class UserManager:
    """
    Owns the signed-in user for one context.

    The in-memory user and the `auth` entry of the user settings file are
    always updated together. A lock makes concurrent callers share one
    profile fetch instead of racing.
    """

    def __init__(self, context: "XDLContext"):
        self._context = context
        self._current_user: User | None = None
        self._lock = asyncio.Lock()

    @property
    def _settings(self):
        return self._context.user_settings

    def _client(self, session_secret: str | None = None, access_token: str | None = None) -> ApiClient:
        return ApiClient(self._context.config, session_secret=session_secret, access_token=access_token)

    async def login(self, username: str, password: str) -> User:
        if self._settings.access_token():
            raise XDLError("ACCESS_TOKEN_SET", "Cannot log in with a password while EXPO_TOKEN is set")

        result = await asyncio.to_thread(
            self._client().post, "auth/loginAsync", {"username": username, "password": password}
        )
        session_secret = (result or {}).get("sessionSecret")
        if not session_secret:
            raise ApiError("LOGIN_FAILED", "The server did not return a session")

        async with self._lock:
            return await self._fetch_profile(
                {"sessionSecret": session_secret, "currentConnection": "Username-Password-Authentication"},
                None,
            )

    async def get_current_user(self) -> User | None:
        async with self._lock:
            if self._current_user and self._current_user.is_authenticated:
                return self._current_user

            if self._context.offline:
                return None

            auth = self._settings.get("auth") or {}
            access_token = self._settings.access_token()
            if not access_token and not auth.get("sessionSecret"):
                return None

            try:
                return await self._fetch_profile(auth, access_token)
            except ApiError as e:
                if e.code in UNAUTHORIZED_CODES:
                    logger.debug("[User] Stored session is no longer valid")
                else:
                    logger.warning(f"[User] Could not load user profile: {e}")
                return None
            except NetworkError as e:
                logger.warning(f"[User] {e}")
                return None

    async def _fetch_profile(self, auth: dict, access_token: str | None) -> User:
        client = self._client(auth.get("sessionSecret"), access_token)
        profile = await asyncio.to_thread(client.post, "auth/userProfileAsync")
        if not profile:
            raise ApiError("INVALID_PROFILE", "Unable to fetch user profile")

        data = _camel_keys(profile)
        data.setdefault("userId", data.get("id"))
        user = User.model_validate({
            **data,
            "kind": "user",
            "currentConnection": auth.get("currentConnection"),
            "sessionSecret": auth.get("sessionSecret"),
            "accessToken": access_token,
        })

        # Access tokens come from the environment and are never written to disk
        if not access_token:
            stored = StoredAuth(
                userId=user.user_id,
                username=user.username,
                currentConnection=user.current_connection,
                sessionSecret=user.session_secret,
            )
            self._settings.set("auth", stored.model_dump(by_alias=True))

        self._current_user = user
        return user

    async def get_current_username(self) -> str | None:
        user = await self.get_current_user()
        return user.username if user else None

    async def get_session(self) -> dict | None:
        user = await self.get_current_user()
        if user is None:
            return None
        if user.access_token:
            return {"accessToken": user.access_token}
        return {"sessionSecret": user.session_secret}

    async def ensure_logged_in(self) -> User:
        if self._context.offline:
            raise XDLError("NETWORK_REQUIRED", "Can't verify user without network access")
        user = await self.get_current_user()
        if user is None:
            raise XDLError("NOT_LOGGED_IN", "Not logged in")
        return user

    async def logout(self) -> None:
        async with self._lock:
            user = self._current_user
            self._current_user = None
            self._settings.delete_key("auth")

        if user and user.session_secret and not self._context.offline:
            try:
                await asyncio.to_thread(self._client(user.session_secret).post, "auth/logout")
            except (ApiError, NetworkError) as e:
                logger.debug(f"[User] Server-side logout failed: {e}")
