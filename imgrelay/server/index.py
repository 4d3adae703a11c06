import asyncio
import ipaddress
import logging
import time
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence
from urllib import parse

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import IPvAnyNetwork

import imgrelay
from imgrelay.backend.index import Retriever, RouteTable
from imgrelay.config import Settings, get_settings
from imgrelay.error import InvalidOption, InvalidSignature, NotFound, RelayError
from imgrelay.logger import init_logging
from imgrelay.options.index import ImageOptions
from imgrelay.pipeline.engine import get_engine
from imgrelay.pipeline.index import Orchestrator, Outcome, WorkerPool
from imgrelay.typing import AccessLogRecord, HealthResponse, HttpPath

logger = logging.getLogger(__name__)

CACHE_CONTROL = 'public, max-age=31536000'
UNLOGGED_PATHS = {'/', '/healthz', '/favicon.ico'}


def client_ip(
    x_forwarded_for: Optional[str],
    trusted_proxies: Sequence[IPvAnyNetwork],
) -> Optional[str]:
  if not x_forwarded_for:
    return None

  addresses = []
  for entry in x_forwarded_for.split(','):
    try:
      addresses.append(ipaddress.ip_address(entry.strip()))
    except ValueError:
      continue

  if len(addresses) == 0:
    return None

  for address in reversed(addresses):
    if not any(address in network for network in trusted_proxies):
      return str(address)

  return str(addresses[0])


def content_disposition(filename: str) -> str:
  if filename.isascii() and filename.isprintable() and not any(c in filename for c in '"\\'):
    return f'attachment; filename="{filename}"'
  # RFC 6266 extended parameter for names a quoted string cannot carry.
  return f"attachment; filename*=UTF-8''{parse.quote(filename, safe='')}"


def response_headers(outcome: Outcome, options: ImageOptions) -> dict[str, str]:
  headers = {
      'content-type': outcome.content_type,
      'cache-control': CACHE_CONTROL,
  }
  if options.download is not None:
    headers['content-disposition'] = content_disposition(options.download)
  return headers


def error_response(e: RelayError, path: str) -> Response:
  match e:
    case NotFound() | InvalidSignature() | InvalidOption():
      logger.info({'message': 'request rejected', 'path': path, 'reason': str(e)})
      return Response(status_code=e.status)
    case _:
      logger.error({
          'message': 'request failed',
          'path': path,
          'error': type(e).__name__,
          'reason': str(e),
      })
      return Response(status_code=HTTPStatus.INTERNAL_SERVER_ERROR)


def init_state(app: FastAPI, settings: Settings) -> None:
  app.state.settings = settings
  app.state.routes = RouteTable.from_settings(settings)
  app.state.retriever = Retriever(settings)
  app.state.pool = WorkerPool.from_settings(settings)
  app.state.orchestrator = Orchestrator(
      settings,
      app.state.retriever,
      app.state.pool,
      get_engine(),
  )


async def close_state(app: FastAPI) -> None:
  await app.state.retriever.close()
  await asyncio.to_thread(app.state.pool.shutdown)


async def access_log(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
  if request.url.path in UNLOGGED_PATHS:
    return await call_next(request)

  started = time.perf_counter()
  response = await call_next(request)
  elapsed = time.perf_counter() - started

  settings: Settings = request.app.state.settings
  remote_addr = client_ip(request.headers.get('x-forwarded-for'), settings.proxies)
  if remote_addr is None and request.client is not None:
    remote_addr = request.client.host

  record: AccessLogRecord = {
      'message': 'access',
      'method': request.method,
      'request_uri': str(request.url.path) + (f'?{request.url.query}' if request.url.query else ''),
      'domain': request.headers.get('host', ''),
      'remote_addr': remote_addr or '',
      'status': response.status_code,
      'response_time': round(elapsed, 6),
      'http_user_agent': request.headers.get('user-agent', ''),
      'http_referrer': request.headers.get('referer', ''),
  }
  logger.info(record)
  return response


def create_app(settings: Optional[Settings] = None) -> FastAPI:

  @asynccontextmanager
  async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    s = settings or get_settings()
    init_logging(s.log_level)
    init_state(app, s)
    logger.info({
        'message': 'imgrelay ready',
        'routes': [r.path for r in app.state.routes.routes],
        'workers': s.workers,
        'max_pending': s.pending_limit,
        'signing': s.signing_secret is not None,
    })
    yield
    await close_state(app)
    logger.info({'message': 'imgrelay stopped'})

  app = FastAPI(title='imgrelay', version=imgrelay.version, lifespan=lifespan)
  app.middleware('http')(access_log)

  @app.get('/healthz')
  async def healthz(request: Request) -> JSONResponse:
    pool: WorkerPool = request.app.state.pool
    body: HealthResponse = {
        'status': 'ok',
        'active': pool.active_count,
        'queued': pool.queue_depth,
    }
    return JSONResponse(body)

  @app.get('/favicon.ico')
  async def favicon() -> Response:
    return Response(status_code=HTTPStatus.NOT_FOUND)

  @app.get('/{path:path}')
  async def image(request: Request, path: str) -> Response:
    # Routes see the path as sent, backends decode it where they need to.
    raw_path = (request.scope.get('raw_path') or b'').decode('latin-1').split('?', 1)[0]
    request_path = HttpPath(raw_path or request.url.path)
    try:
      url = request.app.state.routes.resolve(request_path)
      options = ImageOptions.from_querystring(
          parse.parse_qs(request.url.query, keep_blank_values=True))
      orchestrator: Orchestrator = request.app.state.orchestrator
      outcome = await orchestrator.handle(url, options)
    except RelayError as e:
      return error_response(e, request_path)

    return Response(content=outcome.data, headers=response_headers(outcome, options))

  return app
