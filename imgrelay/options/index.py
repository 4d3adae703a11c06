import dataclasses
import math
import re
from enum import Enum
from typing import Any, Callable, Optional, Self

from imgrelay.error import InvalidOption
from imgrelay.signing import index as signing
from imgrelay.typing import QueryParams

DEFAULT_QUALITY = 75
DEFAULT_DPR = 1
ROTATIONS = (90, 180, 270)

int_re = re.compile(r'[+-]?[0-9]+')
hex_colour_re = re.compile(r'[0-9A-Fa-f]{6}')


class Fit(Enum):
  CLIP = 'clip'
  CROP = 'crop'
  MAX = 'max'


class ImageFormat(Enum):
  JPEG = 'jpeg'
  WEBP = 'webp'
  AVIF = 'avif'
  PNG = 'png'

  @property
  def content_type(self) -> str:
    return f'image/{self.value}'


class Trim(Enum):
  AUTO = 'auto'
  COLOUR = 'colour'


@dataclasses.dataclass(eq=True, frozen=True)
class Colour:
  r: int
  g: int
  b: int

  @classmethod
  def maybe_from_hex(cls, s: str) -> Optional['Colour']:
    # Anything that is not six characters long is treated as unset.
    if len(s) != 6:
      return None
    if hex_colour_re.fullmatch(s) is None:
      raise ValueError(f'invalid hex colour: {s}')
    return cls(int(s[0:2], 16), int(s[2:4], 16), int(s[4:6], 16))

  def to_hex(self) -> str:
    return f'{self.r:02x}{self.g:02x}{self.b:02x}'

  def to_list(self) -> list[float]:
    return [float(self.r), float(self.g), float(self.b)]


WHITE = Colour(255, 255, 255)


@dataclasses.dataclass(eq=True, frozen=True)
class AspectRatio:
  x: int
  y: int
  ratio: float

  @classmethod
  def create(cls, x: int, y: int) -> 'AspectRatio':
    return cls(x, y, x / y)

  @classmethod
  def maybe_from_str(cls, s: str) -> Optional['AspectRatio']:
    if s == '':
      return None

    parts = s.split(':')
    if len(parts) != 2 or not all(int_re.fullmatch(p) for p in parts):
      raise ValueError(f'invalid aspect ratio: {s}')

    x, y = int(parts[0]), int(parts[1])
    if x <= 0 or y <= 0:
      raise ValueError(f'invalid aspect ratio: {s}')

    return cls.create(x, y)

  def height_for(self, width: int) -> int:
    return round_half_up(width / self.ratio)

  def width_for(self, height: int) -> int:
    return round_half_up(height * self.ratio)

  def __str__(self) -> str:
    return f'{self.x}:{self.y}'


def round_half_up(v: float) -> int:
  return math.floor(v + 0.5)


def parse_int(s: str) -> int:
  if int_re.fullmatch(s) is None:
    raise ValueError(f'not an integer: {s!r}')
  return int(s)


def parse_dimension(s: str) -> Optional[int]:
  # Non-positive dimensions mean "not requested" rather than an error.
  value = parse_int(s)
  return value if 0 < value else None


def parse_percentage(s: str) -> int:
  value = parse_int(s)
  if not 1 <= value <= 100:
    raise ValueError('percentage must be between 1 and 100')
  return value


def parse_rotation(s: str) -> int:
  value = parse_int(s)
  if value not in ROTATIONS:
    raise ValueError('rotation must be one of 90, 180, or 270')
  return value


def parse_dpr(s: str) -> int:
  value = parse_int(s)
  if value <= 0:
    raise ValueError('device pixel ratio must be positive')
  return value


def parse_bool(s: str) -> bool:
  if s == 'true':
    return True
  if s == 'false':
    return False
  raise ValueError(f'not a boolean: {s!r}')


def parse_enum(cls: type[Enum]) -> Callable[[str], Any]:

  def fn(s: str) -> Any:
    try:
      return cls(s)
    except ValueError:
      raise ValueError(f'unknown {cls.__name__.lower()}: {s!r}') from None

  return fn


def parse_str(s: str) -> str:
  return s


# query key -> (attribute, parser)
PARSERS: dict[str, tuple[str, Callable[[str], Any]]] = {
    'sig': ('signature', parse_str),
    'bg': ('background', Colour.maybe_from_hex),
    'ar': ('aspect_ratio', AspectRatio.maybe_from_str),
    'lossless': ('lossless', parse_bool),
    'q': ('quality', parse_int),
    'dpr': ('device_pixel_ratio', parse_dpr),
    'rot': ('rotate', parse_rotation),
    'w': ('width', parse_dimension),
    'h': ('height', parse_dimension),
    'fit': ('fit', parse_enum(Fit)),
    'fm': ('format', parse_enum(ImageFormat)),
    'dl': ('download', parse_str),
    'trim': ('trim', parse_enum(Trim)),
    'trim-colour': ('trim_colour', Colour.maybe_from_hex),
    'sharpen': ('sharpen', parse_percentage),
    'blur': ('blur', parse_percentage),
    'kodachrome': ('kodachrome', parse_percentage),
    'technicolor': ('technicolor', parse_percentage),
    'vintage': ('vintage', parse_percentage),
    'polaroid': ('polaroid', parse_percentage),
    'sepia': ('sepia', parse_percentage),
    'monochrome': ('monochrome', parse_percentage),
}

# attribute -> key used in the signed query string
CANONICAL_KEYS: dict[str, str] = {
    'background': 'background',
    'quality': 'quality',
    'aspect_ratio': 'ar',
    'download': 'download',
    'trim': 'trim',
    'trim_colour': 'trim-colour',
    'sharpen': 'sharpen',
    'blur': 'blur',
    'kodachrome': 'kodachrome',
    'technicolor': 'technicolor',
    'vintage': 'vintage',
    'polaroid': 'polaroid',
    'sepia': 'sepia',
    'monochrome': 'monochrome',
    'width': 'width',
    'height': 'height',
    'device_pixel_ratio': 'dpr',
    'rotate': 'rot',
    'fit': 'fit',
    'format': 'format',
    'lossless': 'lossless',
}


def canonical_value(value: Any) -> str:
  if isinstance(value, bool):
    return 'true' if value else 'false'
  if isinstance(value, Colour):
    return value.to_hex()
  if isinstance(value, Enum):
    return str(value.value)
  return str(value)


@dataclasses.dataclass
class ImageOptions:
  signature: Optional[str] = None
  background: Optional[Colour] = None
  aspect_ratio: Optional[AspectRatio] = None
  lossless: Optional[bool] = None
  quality: Optional[int] = None
  device_pixel_ratio: Optional[int] = None
  rotate: Optional[int] = None
  width: Optional[int] = None
  height: Optional[int] = None
  fit: Optional[Fit] = None
  format: Optional[ImageFormat] = None
  download: Optional[str] = None
  trim: Optional[Trim] = None
  trim_colour: Optional[Colour] = None
  sharpen: Optional[int] = None
  blur: Optional[int] = None
  kodachrome: Optional[int] = None
  technicolor: Optional[int] = None
  vintage: Optional[int] = None
  polaroid: Optional[int] = None
  sepia: Optional[int] = None
  monochrome: Optional[int] = None

  @classmethod
  def from_querystring(cls, qs: QueryParams) -> Self:
    values: dict[str, Any] = {}
    for key, (attr, parse) in PARSERS.items():
      if key not in qs or len(qs[key]) == 0:
        continue
      try:
        values[attr] = parse(qs[key][0])
      except ValueError as e:
        raise InvalidOption(key, str(e)) from None
    return cls(**values)

  @property
  def dpr(self) -> int:
    return DEFAULT_DPR if self.device_pixel_ratio is None else self.device_pixel_ratio

  @property
  def output_format(self) -> ImageFormat:
    return ImageFormat.JPEG if self.format is None else self.format

  def any_set(self) -> bool:
    # A quality of exactly 75 and a DPR of exactly 1 do not count. Note that
    # this lets e.g. `?q=75` through unsigned and untransformed.
    for field in dataclasses.fields(self):
      value = getattr(self, field.name)
      if value is None:
        continue
      if field.name == 'quality' and value == DEFAULT_QUALITY:
        continue
      if field.name == 'device_pixel_ratio' and value == DEFAULT_DPR:
        continue
      return True
    return False

  def canonical_query(self) -> str:
    params = {
        key: canonical_value(getattr(self, attr))
        for attr, key in CANONICAL_KEYS.items()
        if getattr(self, attr) is not None
    }
    return '&'.join(f'{k}={v}' for k, v in sorted(params.items()))

  def sign(self, secret: str) -> str:
    return signing.sign(secret, self.canonical_query())

  def verify_signature(self, secret: str) -> bool:
    if self.signature is None:
      return False
    return signing.verify(secret, self.canonical_query(), self.signature)


def save_options(options: ImageOptions) -> tuple[ImageFormat, dict[str, Any]]:
  fmt = options.output_format
  match fmt:
    case ImageFormat.JPEG:
      return fmt, jpeg_save_options(options)
    case ImageFormat.WEBP:
      return fmt, webp_save_options(options)
    case ImageFormat.PNG:
      return fmt, png_save_options(options)
    case ImageFormat.AVIF:
      return fmt, heif_save_options(options)
    case _:
      raise Exception('system error')


def jpeg_save_options(options: ImageOptions) -> dict[str, Any]:
  return {
      'Q': 80 if options.quality is None else options.quality,
      'optimize_coding': False,
      # Interlacing slows encoding down significantly.
      'interlace': False,
  }


def webp_save_options(options: ImageOptions) -> dict[str, Any]:
  return {
      'Q': 80 if options.quality is None else options.quality,
      'lossless': bool(options.lossless),
  }


def png_save_options(options: ImageOptions) -> dict[str, Any]:
  return {
      'Q': 80 if options.quality is None else options.quality,
      'compression': 6,
      'interlace': True,
  }


def heif_save_options(options: ImageOptions) -> dict[str, Any]:
  opts: dict[str, Any] = {
      'Q': DEFAULT_QUALITY if options.quality is None else options.quality,
      'lossless': bool(options.lossless),
      'compression': 'hevc',
      'effort': 4,
  }
  if options.format == ImageFormat.AVIF:
    opts['compression'] = 'av1'
    opts['bitdepth'] = 8
  return opts
