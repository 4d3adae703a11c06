import asyncio
import dataclasses
import datetime
import logging
from http import HTTPStatus
from pathlib import Path
from typing import Callable, Optional
from urllib import parse

import httpx
from dateutil import tz

from imgrelay.config import RouteSettings, S3Settings, Settings
from imgrelay.error import BackendError, InvalidBackend, NotFound
from imgrelay.signing.index import sigv4_headers
from imgrelay.typing import BackendUrl, HttpPath

logger = logging.getLogger(__name__)


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


@dataclasses.dataclass(eq=True, frozen=True)
class Route:
  path: HttpPath
  endpoint: str

  @classmethod
  def from_settings(cls, route: RouteSettings) -> 'Route':
    return cls(HttpPath('/' + route.path.strip('/')), route.endpoint)

  def resolve(self, request_path: HttpPath) -> Optional[BackendUrl]:
    # Prefixes match whole path segments, so /images never matches /imagesfoo.
    prefix = self.path.rstrip('/')
    if request_path != prefix and not request_path.startswith(prefix + '/'):
      return None
    rest = request_path[len(prefix):]
    # Backends decode the path, so parent segments are checked decoded too.
    if '..' in parse.unquote(rest).split('/'):
      raise NotFound(f'parent segment in {request_path}')
    return BackendUrl(self.endpoint.rstrip('/') + rest)


class RouteTable:
  routes: list[Route]

  def __init__(self, routes: list[Route]):
    self.routes = routes

  @classmethod
  def from_settings(cls, settings: Settings) -> 'RouteTable':
    return cls([Route.from_settings(r) for r in settings.routing])

  def resolve(self, request_path: HttpPath) -> BackendUrl:
    for route in self.routes:
      url = route.resolve(request_path)
      if url is not None:
        return url
    raise NotFound(f'no route for {request_path}')


def s3_url(bucket: str, region: str, path: str) -> str:
  return f'http://{bucket}.s3.{region}.amazonaws.com{path}'


def is_success(status: int) -> bool:
  return 200 <= status < 300


class Retriever:

  def __init__(
      self,
      settings: Settings,
      client: Optional[httpx.AsyncClient] = None,
      now: Callable[[], datetime.datetime] = get_now,
  ):
    self.read_timeout = settings.read_timeout
    self.s3: Optional[S3Settings] = settings.s3
    self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(settings.read_timeout))
    self.now = now

  async def fetch(self, url: BackendUrl) -> bytes:
    try:
      u = parse.urlsplit(url)
    except ValueError as e:
      raise InvalidBackend(f'invalid backend url: {e}') from None

    match u.scheme:
      case 'file':
        return await self.fetch_file(u.path)
      case 'http' | 'https':
        return await self.fetch_http(url)
      case 's3':
        return await self.fetch_s3(u.hostname or '', u.path)
      case _:
        raise InvalidBackend(f'unsupported scheme: {u.scheme!r}')

  async def fetch_file(self, path: str) -> bytes:

    def read() -> bytes:
      return Path(parse.unquote(path)).resolve(strict=True).read_bytes()

    try:
      return await asyncio.to_thread(read)
    except FileNotFoundError:
      raise NotFound() from None
    except OSError as e:
      raise BackendError(f'io error: {e}') from e

  async def get(self, url: str, headers: Optional[dict[str, str]] = None) -> httpx.Response:
    try:
      return await self.client.get(url, headers=headers)
    except httpx.HTTPError as e:
      logger.warning({'message': 'backend request failed', 'url': url, 'reason': str(e)})
      raise BackendError(f'http error: {e}') from e

  async def fetch_http(self, url: str) -> bytes:
    res = await self.get(url)
    if not is_success(res.status_code):
      raise BackendError(f'http status {res.status_code} from {url}')
    return res.content

  async def fetch_s3(self, bucket: str, path: str) -> bytes:
    if self.s3 is None:
      raise InvalidBackend('s3 backend is not configured')

    url = s3_url(bucket, self.s3.region, path)
    res = await self.get(url, sigv4_headers(self.now(), url, self.s3))

    # S3 answers 403 for a missing key unless the caller may list the bucket.
    if res.status_code == HTTPStatus.FORBIDDEN:
      raise NotFound()
    if not is_success(res.status_code):
      raise BackendError(f'http status {res.status_code} from {url}')
    return res.content

  async def close(self) -> None:
    await self.client.aclose()
