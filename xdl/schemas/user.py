from pydantic import BaseModel, ConfigDict, Field

class User(BaseModel):
  model_config = ConfigDict(populate_by_name=True, extra="allow")

  kind: str = "user"
  username: str
  user_id: str | None = Field(None, alias="userId")
  nickname: str | None = None
  email: str | None = None
  current_connection: str | None = Field(None, alias="currentConnection")
  session_secret: str | None = Field(None, alias="sessionSecret")
  access_token: str | None = Field(None, alias="accessToken")

  @property
  def is_authenticated(self) -> bool:
    return bool(self.access_token or self.session_secret)

class StoredAuth(BaseModel):
  """What the user settings file keeps under `auth`. Access tokens never land here."""
  model_config = ConfigDict(populate_by_name=True)

  user_id: str | None = Field(None, alias="userId")
  username: str
  current_connection: str | None = Field(None, alias="currentConnection")
  session_secret: str = Field(alias="sessionSecret")
