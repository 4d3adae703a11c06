import functools
import logging
import threading
from typing import Any, Callable, Optional, Protocol, Tuple, TypeVar

import pyvips  # type: ignore

from imgrelay.error import TransformError
from imgrelay.options.index import WHITE, Colour, ImageFormat

logger = logging.getLogger(__name__)

T = TypeVar('T')

TRIM_THRESHOLD = 40.0

# Alpha images are flattened onto a colour unlikely to appear in the picture
# before looking for the trim box.
TRIM_ALPHA_BACKGROUND = [255.0, 0.0, 255.0]

SAVERS = {
    ImageFormat.JPEG: 'jpegsave_buffer',
    ImageFormat.WEBP: 'webpsave_buffer',
    ImageFormat.PNG: 'pngsave_buffer',
    ImageFormat.AVIF: 'heifsave_buffer',
}


class ImageEngine(Protocol):

  def needs_rotation(self, data: bytes) -> bool:
    ...

  def load(self, data: bytes, random_access: bool) -> Any:
    ...

  def size(self, image: Any) -> Tuple[int, int]:
    ...

  def autorotate(self, image: Any) -> Any:
    ...

  def rotate(self, image: Any, angle: int) -> Any:
    ...

  def find_trim(self, image: Any, background: Colour) -> Tuple[int, int, int, int]:
    ...

  def extract_area(self, image: Any, x: int, y: int, width: int, height: int) -> Any:
    ...

  def flatten(self, image: Any, colour: Colour) -> Any:
    ...

  def sharpen(self, image: Any, sigma: float) -> Any:
    ...

  def gaussian_blur(self, image: Any, sigma: float) -> Any:
    ...

  def apply_style(self, image: Any, matrix: list[list[float]], opacity: int) -> Any:
    ...

  def is_srgb(self, image: Any) -> bool:
    ...

  def colourspace_srgb(self, image: Any) -> Any:
    ...

  def thumbnail(self, image: Any, width: int, height: int) -> Any:
    ...

  def encode(self, image: Any, fmt: ImageFormat, kwargs: dict[str, Any]) -> bytes:
    ...


def vips_op(stage: str) -> Callable[[Callable[..., T]], Callable[..., T]]:

  def decorator(fn: Callable[..., T]) -> Callable[..., T]:

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> T:
      try:
        return fn(*args, **kwargs)
      except pyvips.Error as e:
        detail = ' '.join(str(e.detail or e.message).split())
        raise TransformError(stage, detail) from e

    return wrapper

  return decorator


class VipsEngine:

  def __init__(self) -> None:
    # Decoded pixels must never outlive the request that produced them.
    pyvips.cache_set_max(0)
    pyvips.cache_set_max_mem(0)

  def needs_rotation(self, data: bytes) -> bool:
    try:
      image = pyvips.Image.new_from_buffer(data, '')
      if image.get_typeof('orientation') == 0:
        return False
      return image.get('orientation') not in (0, 1)
    except pyvips.Error:
      return False

  @vips_op('load')
  def load(self, data: bytes, random_access: bool) -> pyvips.Image:
    access = 'random' if random_access else 'sequential'
    return pyvips.Image.new_from_buffer(data, '', access=access)

  def size(self, image: pyvips.Image) -> Tuple[int, int]:
    return (image.width, image.height)

  @vips_op('rotate')
  def autorotate(self, image: pyvips.Image) -> pyvips.Image:
    return image.autorot()

  @vips_op('rotate')
  def rotate(self, image: pyvips.Image, angle: int) -> pyvips.Image:
    return image.rot(f'd{angle}')

  @vips_op('trim')
  def find_trim(self, image: pyvips.Image, background: Colour) -> Tuple[int, int, int, int]:
    if image.hasalpha():
      image = image.flatten(background=TRIM_ALPHA_BACKGROUND)
      bg = image.getpoint(0, 0)
    else:
      bg = background.to_list()

    left, top, width, height = image.find_trim(threshold=TRIM_THRESHOLD, background=bg)
    return (left, top, width, height)

  @vips_op('extract_area')
  def extract_area(
      self, image: pyvips.Image, x: int, y: int, width: int, height: int) -> pyvips.Image:
    return image.extract_area(x, y, width, height)

  @vips_op('flatten')
  def flatten(self, image: pyvips.Image, colour: Colour) -> pyvips.Image:
    if not image.hasalpha():
      return image
    return image.flatten(background=colour.to_list())

  @vips_op('sharpen')
  def sharpen(self, image: pyvips.Image, sigma: float) -> pyvips.Image:
    return image.sharpen(sigma=sigma)

  @vips_op('blur')
  def gaussian_blur(self, image: pyvips.Image, sigma: float) -> pyvips.Image:
    return image.gaussblur(sigma, min_ampl=0.001, precision='approximate')

  @vips_op('style')
  def apply_style(
      self, image: pyvips.Image, matrix: list[list[float]], opacity: int) -> pyvips.Image:
    if image.bands < 3:
      image = image.colourspace('srgb')
    if image.hasalpha():
      image = image.flatten(background=WHITE.to_list())

    overlay = image.recomb(pyvips.Image.new_from_array(matrix)).cast('float')
    if opacity >= 100:
      return overlay.cast('uchar')

    overlay = overlay.bandjoin(255.0 * opacity / 100.0)
    blended = image.composite2(overlay, 'over')
    return blended.flatten(background=WHITE.to_list()).cast('uchar')

  def is_srgb(self, image: pyvips.Image) -> bool:
    return image.interpretation == 'srgb'

  @vips_op('colourspace')
  def colourspace_srgb(self, image: pyvips.Image) -> pyvips.Image:
    return image.colourspace('srgb')

  @vips_op('resize')
  def thumbnail(self, image: pyvips.Image, width: int, height: int) -> pyvips.Image:
    return image.thumbnail_image(
        width,
        height=height,
        crop='centre',
        size='both',
        linear=False,
        import_profile='sRGB',
        export_profile='sRGB',
    )

  @vips_op('encode')
  def encode(self, image: pyvips.Image, fmt: ImageFormat, kwargs: dict[str, Any]) -> bytes:
    return getattr(image, SAVERS[fmt])(**kwargs)


_engine: Optional[VipsEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> VipsEngine:
  global _engine
  if _engine is None:
    with _engine_lock:
      if _engine is None:
        _engine = VipsEngine()
        logger.info({
            'message': 'image engine ready',
            'libvips': f'{pyvips.version(0)}.{pyvips.version(1)}.{pyvips.version(2)}',
        })
  return _engine
