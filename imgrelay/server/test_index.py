import asyncio
import threading
from http import HTTPStatus
from ipaddress import ip_network
from pathlib import Path
from typing import AsyncIterator, Optional
from urllib import parse

import httpx
import pytest
import pyvips  # type: ignore
from fastapi import FastAPI

from imgrelay.config import RouteSettings, Settings
from imgrelay.options.index import ImageOptions

from .index import (
    CACHE_CONTROL,
    client_ip,
    close_state,
    content_disposition,
    create_app,
    init_state
)

SECRET = 'super_secret_key'
PNG_NAME = 'image.png'


def signed(query: str, secret: str = SECRET) -> str:
  options = ImageOptions.from_querystring(parse.parse_qs(query, keep_blank_values=True))
  return f'{query}&sig={options.sign(secret)}'


@pytest.fixture
def image_dir(tmp_path: Path) -> Path:
  image = pyvips.Image.black(60, 40, bands=3).new_from_image([200, 100, 50])
  (tmp_path / PNG_NAME).write_bytes(image.pngsave_buffer())
  (tmp_path / 'broken.png').write_bytes(b'not an image')
  return tmp_path


@pytest.fixture
def settings(image_dir: Path) -> Settings:
  return Settings(
      routing=[
          RouteSettings(path='images', endpoint=f'file://{image_dir}'),
          RouteSettings(path='ftp', endpoint='ftp://example.com'),
      ],
      signing_secret=SECRET,
      workers=2,
  )


@pytest.fixture
def app(settings: Settings) -> FastAPI:
  application = create_app(settings)
  # ASGITransport does not run the lifespan.
  init_state(application, settings)
  return application


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
  async with httpx.AsyncClient(
      transport=httpx.ASGITransport(app=app),
      base_url='http://testserver',
  ) as ac:
    yield ac
  await close_state(app)


async def test_healthz(client: httpx.AsyncClient) -> None:
  res = await client.get('/healthz')

  assert res.status_code == HTTPStatus.OK
  assert res.json() == {'status': 'ok', 'active': 0, 'queued': 0}


async def test_favicon(client: httpx.AsyncClient) -> None:
  res = await client.get('/favicon.ico')

  assert res.status_code == HTTPStatus.NOT_FOUND


async def test_pass_through(client: httpx.AsyncClient, image_dir: Path) -> None:
  res = await client.get(f'/images/{PNG_NAME}')

  assert res.status_code == HTTPStatus.OK
  assert res.content == (image_dir / PNG_NAME).read_bytes()
  assert res.headers['content-type'] == 'image/jpeg'
  assert res.headers['cache-control'] == CACHE_CONTROL
  assert 'content-disposition' not in res.headers


async def test_pass_through_default_options(client: httpx.AsyncClient, image_dir: Path) -> None:
  res = await client.get(f'/images/{PNG_NAME}?q=75&dpr=1')

  assert res.status_code == HTTPStatus.OK
  assert res.content == (image_dir / PNG_NAME).read_bytes()


@pytest.mark.parametrize(
    'query,content_type,size',
    [
        ('w=30', 'image/jpeg', (30, 20)),
        ('w=30&fm=webp', 'image/webp', (30, 20)),
        ('h=10&fm=png', 'image/png', (15, 10)),
        ('w=20&h=20&fit=crop', 'image/jpeg', (20, 20)),
        ('w=15&dpr=2&fm=png', 'image/png', (30, 20)),
    ],
    ids=['jpeg', 'webp', 'png', 'crop', 'dpr'],
)
async def test_transform(
    client: httpx.AsyncClient,
    query: str,
    content_type: str,
    size: tuple[int, int],
) -> None:
  res = await client.get(f'/images/{PNG_NAME}?{signed(query)}')

  assert res.status_code == HTTPStatus.OK
  assert res.headers['content-type'] == content_type
  assert res.headers['cache-control'] == CACHE_CONTROL

  image = pyvips.Image.new_from_buffer(res.content, '')
  assert (image.width, image.height) == size


async def test_download(client: httpx.AsyncClient) -> None:
  res = await client.get(f'/images/{PNG_NAME}?{signed("w=30&dl=photo.jpg")}')

  assert res.status_code == HTTPStatus.OK
  assert res.headers['content-disposition'] == 'attachment; filename="photo.jpg"'


@pytest.mark.parametrize(
    'filename,expected',
    [
        ('photo.jpg', 'attachment; filename="photo.jpg"'),
        ('写真.jpg', "attachment; filename*=UTF-8''%E5%86%99%E7%9C%9F.jpg"),
        ('a"b.jpg', "attachment; filename*=UTF-8''a%22b.jpg"),
        ('a\r\nb.jpg', "attachment; filename*=UTF-8''a%0D%0Ab.jpg"),
    ],
    ids=['ascii', 'non_latin1', 'quote', 'newline'],
)
def test_content_disposition(filename: str, expected: str) -> None:
  assert content_disposition(filename) == expected


async def test_download_non_latin1(client: httpx.AsyncClient) -> None:
  res = await client.get(f'/images/{PNG_NAME}?{signed("w=30&dl=%E5%86%99%E7%9C%9F.jpg")}')

  assert res.status_code == HTTPStatus.OK
  assert res.headers['content-disposition'] == "attachment; filename*=UTF-8''%E5%86%99%E7%9C%9F.jpg"
  assert pyvips.Image.new_from_buffer(res.content, '').width == 30


@pytest.mark.parametrize(
    'query',
    ['w=30', 'w=30&sig=00', signed('w=30', 'wrong_secret'), signed('w=30') + '&h=1'],
    ids=['missing', 'garbage', 'wrong_secret', 'tampered'],
)
async def test_invalid_signature(client: httpx.AsyncClient, query: str) -> None:
  res = await client.get(f'/images/{PNG_NAME}?{query}')

  assert res.status_code == HTTPStatus.UNAUTHORIZED
  assert res.content == b''


@pytest.mark.parametrize(
    'path',
    ['/images/missing.png', '/unrouted/image.png', '/'],
    ids=['missing_file', 'no_route', 'root'],
)
async def test_not_found(client: httpx.AsyncClient, path: str) -> None:
  res = await client.get(path)

  assert res.status_code == HTTPStatus.NOT_FOUND


async def test_parent_segment_outside_root(tmp_path: Path) -> None:
  public = tmp_path / 'public'
  public.mkdir()
  (tmp_path / 'secret.txt').write_bytes(b'secret')
  settings = Settings(
      routing=[RouteSettings(path='images', endpoint=f'file://{public}')],
      signing_secret=SECRET,
  )
  app = create_app(settings)
  init_state(app, settings)

  async with httpx.AsyncClient(
      transport=httpx.ASGITransport(app=app),
      base_url='http://testserver',
  ) as client:
    res = await client.get('/images/..%2fsecret.txt')

  await close_state(app)

  assert res.status_code == HTTPStatus.NOT_FOUND
  assert res.content == b''


@pytest.mark.parametrize(
    'query',
    ['rot=45', 'bg=zzzzzz', 'sharpen=0', 'fm=gif'],
    ids=['rotation', 'colour', 'percentage', 'format'],
)
async def test_invalid_option(client: httpx.AsyncClient, query: str) -> None:
  res = await client.get(f'/images/{PNG_NAME}?{query}')

  assert res.status_code == HTTPStatus.BAD_REQUEST
  assert res.content == b''


@pytest.mark.parametrize(
    'path',
    ['/ftp/image.png', f'/images/broken.png?{signed("w=30")}'],
    ids=['unsupported_backend', 'undecodable'],
)
async def test_internal_error(client: httpx.AsyncClient, path: str) -> None:
  res = await client.get(path)

  assert res.status_code == HTTPStatus.INTERNAL_SERVER_ERROR
  assert res.content == b''


async def test_without_signing_secret(image_dir: Path) -> None:
  settings = Settings(routing=[RouteSettings(path='/', endpoint=f'file://{image_dir}')])
  app = create_app(settings)
  init_state(app, settings)

  async with httpx.AsyncClient(
      transport=httpx.ASGITransport(app=app),
      base_url='http://testserver',
  ) as client:
    res = await client.get(f'/{PNG_NAME}?w=30')

  await close_state(app)

  assert res.status_code == HTTPStatus.OK
  assert pyvips.Image.new_from_buffer(res.content, '').width == 30


async def test_close_state_keeps_loop_running(app: FastAPI) -> None:
  release = threading.Event()
  job = asyncio.create_task(app.state.pool.run(release.wait))
  await asyncio.sleep(0.05)

  closing = asyncio.create_task(close_state(app))
  await asyncio.sleep(0.05)
  assert not closing.done()

  release.set()
  await closing
  assert await job is True


PROXIES = [ip_network('10.0.0.0/8'), ip_network('192.168.0.0/16'), ip_network('::1/128')]


@pytest.mark.parametrize(
    'header,expected',
    [
        (None, None),
        ('', None),
        ('203.0.113.7', '203.0.113.7'),
        ('203.0.113.7, 10.0.0.1', '203.0.113.7'),
        ('198.51.100.1, 203.0.113.7, 10.0.0.1, 192.168.1.1', '203.0.113.7'),
        ('10.0.0.2, 10.0.0.1', '10.0.0.2'),
        ('garbage, 203.0.113.7, 10.0.0.1', '203.0.113.7'),
        ('203.0.113.7, garbage', '203.0.113.7'),
        ('garbage', None),
        ('2001:db8::1, ::1', '2001:db8::1'),
        (
            '203.0.113.195,2001:db8:85a3:8d3:1319:8a2e:370:7348,198.51.100.178,192.168.4.23',
            '198.51.100.178',
        ),
    ],
    ids=[
        'missing',
        'empty',
        'single',
        'one_proxy',
        'chain',
        'all_trusted',
        'skip_unparsable',
        'trailing_unparsable',
        'only_unparsable',
        'ipv6',
        'mixed_families',
    ],
)
def test_client_ip(header: Optional[str], expected: Optional[str]) -> None:
  assert client_ip(header, PROXIES) == expected
