import asyncio
import dataclasses
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Protocol, TypeVar

from imgrelay.config import Settings
from imgrelay.error import HandoffError, InvalidSignature, RelayError, TransformError
from imgrelay.geometry.index import resize_scale, resolve_dimensions
from imgrelay.options.index import WHITE, ImageFormat, ImageOptions, save_options
from imgrelay.pipeline.engine import ImageEngine
from imgrelay.typing import BackendUrl

logger = logging.getLogger(__name__)

T = TypeVar('T')

KODACHROME = [
    [1.12855, -0.39673, -0.03992],
    [-0.16404, 1.08352, -0.05498],
    [-0.16786, -0.56034, 1.60148],
]
TECHNICOLOR = [
    [1.91252, -0.85453, -0.09155],
    [-0.30878, 1.76589, -0.10601],
    [-0.2311, -0.75018, 1.84759],
]
POLAROID = [
    [1.438, -0.062, -0.062],
    [-0.122, 1.378, -0.122],
    [-0.016, -0.016, 1.483],
]
VINTAGE = [
    [0.62793, 0.32021, -0.03965],
    [0.02578, 0.64411, 0.03259],
    [0.0466, -0.08512, 0.52416],
]
SEPIA = [
    [0.393, 0.769, 0.189],
    [0.349, 0.686, 0.168],
    [0.272, 0.534, 0.131],
]
MONOCHROME = [
    [0.299, 0.587, 0.114],
    [0.299, 0.587, 0.114],
    [0.299, 0.587, 0.114],
]

# Applied in this order, each gated by the option of the same name.
STYLES: list[tuple[str, list[list[float]]]] = [
    ('kodachrome', KODACHROME),
    ('technicolor', TECHNICOLOR),
    ('polaroid', POLAROID),
    ('vintage', VINTAGE),
    ('sepia', SEPIA),
    ('monochrome', MONOCHROME),
]

SHARPEN_SIGMA = (0.000001, 10.0)
BLUR_SIGMA = (0.0, 50.0)


@dataclasses.dataclass(frozen=True)
class Job:
  data: bytes
  options: ImageOptions


@dataclasses.dataclass(frozen=True)
class Outcome:
  data: bytes
  format: ImageFormat

  @property
  def content_type(self) -> str:
    return self.format.content_type


def percent_to_value(p: int, lower: float, upper: float) -> float:
  if upper == lower:
    return lower
  return lower + (upper - lower) * min(max(p, 0), 100) / 100.0


def trim(engine: ImageEngine, image: Any, options: ImageOptions) -> Any:
  background = WHITE if options.trim_colour is None else options.trim_colour
  try:
    left, top, width, height = engine.find_trim(image, background)
    return engine.extract_area(image, left, top, width, height)
  except TransformError as e:
    # An untrimmed image is better than no image.
    logger.warning({'message': 'unable to trim image', 'reason': str(e)})
    return image


def resize(engine: ImageEngine, image: Any, options: ImageOptions) -> Any:
  image_width, image_height = engine.size(image)
  resolve_dimensions(options, image_width, image_height)
  assert options.width is not None and options.height is not None

  logger.debug({
      'message': 'resize param',
      'original': (image_width, image_height),
      'target': (options.width, options.height),
      'scale': resize_scale(options, image_width, image_height),
      'fit': None if options.fit is None else options.fit.value,
  })
  return engine.thumbnail(image, options.width, options.height)


def process(engine: ImageEngine, job: Job) -> Outcome:
  # The resolver overwrites width and height, so work on a private copy.
  options = dataclasses.replace(job.options)

  rotation = options.rotate is not None or engine.needs_rotation(job.data)
  image = engine.load(job.data, rotation)

  if rotation:
    image = engine.autorotate(image)
    if options.rotate is not None:
      image = engine.rotate(image, options.rotate)

  if options.trim is not None:
    image = trim(engine, image, options)

  if options.background is not None:
    image = engine.flatten(image, options.background)

  if options.width is not None or options.height is not None:
    image = resize(engine, image, options)

  if options.sharpen is not None:
    image = engine.sharpen(image, percent_to_value(options.sharpen, *SHARPEN_SIGMA))

  if options.blur is not None:
    image = engine.gaussian_blur(image, percent_to_value(options.blur, *BLUR_SIGMA))

  for name, matrix in STYLES:
    opacity: Optional[int] = getattr(options, name)
    if opacity is not None:
      image = engine.apply_style(image, matrix, opacity)

  if not engine.is_srgb(image):
    image = engine.colourspace_srgb(image)

  fmt, kwargs = save_options(options)
  return Outcome(engine.encode(image, fmt, kwargs), fmt)


class WorkerPool:
  """Runs CPU-bound jobs off the event loop.

  At most `max_pending` jobs are queued or running at once; further callers
  wait for a slot. Each job hands its result back through its own
  `concurrent.futures.Future`. Cancellation is cooperative only: once a job
  is submitted it always runs to completion, even if the caller stops
  waiting.
  """

  def __init__(self, workers: int, max_pending: int) -> None:
    self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='imgrelay-worker')
    self._slots = asyncio.Semaphore(max_pending)
    self._active_count: int = 0
    self._queue_depth: int = 0
    self._counter_lock = threading.Lock()

  @classmethod
  def from_settings(cls, settings: Settings) -> 'WorkerPool':
    return cls(settings.workers, settings.pending_limit)

  def _call(self, func: Callable[..., T], *args: Any) -> T:
    with self._counter_lock:
      self._active_count += 1
    try:
      return func(*args)
    finally:
      with self._counter_lock:
        self._active_count -= 1

  async def run(self, func: Callable[..., T], *args: Any) -> T:
    with self._counter_lock:
      self._queue_depth += 1
    try:
      await self._slots.acquire()
    finally:
      with self._counter_lock:
        self._queue_depth -= 1

    loop = asyncio.get_running_loop()
    try:
      future: Future[T] = self._executor.submit(self._call, func, *args)
    except RuntimeError as e:
      self._slots.release()
      raise HandoffError('worker pool is not accepting jobs') from e

    def release(_: Future[T]) -> None:
      if not loop.is_closed():
        loop.call_soon_threadsafe(self._slots.release)

    future.add_done_callback(release)

    try:
      return await asyncio.shield(asyncio.wrap_future(future))
    except RelayError:
      raise
    except Exception as e:
      raise HandoffError(f'job failed without a result: {e!r}') from e

  @property
  def active_count(self) -> int:
    with self._counter_lock:
      return self._active_count

  @property
  def queue_depth(self) -> int:
    with self._counter_lock:
      return self._queue_depth

  def shutdown(self) -> None:
    self._executor.shutdown(wait=True)


class Fetcher(Protocol):

  async def fetch(self, url: BackendUrl) -> bytes:
    ...


class Orchestrator:

  def __init__(
      self,
      settings: Settings,
      retriever: Fetcher,
      pool: WorkerPool,
      engine: ImageEngine,
  ):
    self.signing_secret = settings.signing_secret
    self.retriever = retriever
    self.pool = pool
    self.engine = engine

  async def handle(self, url: BackendUrl, options: ImageOptions) -> Outcome:
    logger.debug({'message': 'fetching image from backend', 'url': url})
    data = await self.retriever.fetch(url)

    if not options.any_set():
      return Outcome(data, ImageFormat.JPEG)

    if self.signing_secret is not None and not options.verify_signature(self.signing_secret):
      raise InvalidSignature()

    logger.debug({'message': 'processing image', 'url': url, 'size': len(data)})
    return await self.pool.run(process, self.engine, Job(data, options))
