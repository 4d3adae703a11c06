import os
from typing import Optional

from pydantic import BaseModel, Field, IPvAnyNetwork
from pydantic_settings import BaseSettings, SettingsConfigDict


class S3Settings(BaseModel):
  access_key_id: str
  secret_access_key: str
  region: str


class RouteSettings(BaseModel):
  path: str
  endpoint: str


def default_workers() -> int:
  return os.cpu_count() or 1


class Settings(BaseSettings):
  """Settings loaded from IMGRELAY_* environment variables.

  Nested values use `__`, e.g. IMGRELAY_S3__REGION. Lists are JSON, e.g.
  IMGRELAY_ROUTING='[{"path": "images", "endpoint": "s3://bucket"}]'.
  """

  model_config = SettingsConfigDict(
      env_prefix='IMGRELAY_',
      env_nested_delimiter='__',
      case_sensitive=False,
  )

  host: str = '0.0.0.0'  # noqa: S104
  port: int = 8080

  read_timeout: int = Field(default=10, ge=1)
  routing: list[RouteSettings] = []
  proxies: list[IPvAnyNetwork] = []
  s3: Optional[S3Settings] = None
  signing_secret: Optional[str] = None

  workers: int = Field(default_factory=default_workers, ge=1)
  max_pending: Optional[int] = Field(default=None, ge=1)

  log_level: str = 'INFO'

  @property
  def pending_limit(self) -> int:
    if self.max_pending is None:
      return self.workers * 4
    return self.max_pending


def get_settings() -> Settings:
  return Settings()
