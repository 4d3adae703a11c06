from typing import Optional, Tuple

from imgrelay.options.index import AspectRatio, Fit, ImageOptions

Dimensions = Tuple[int, int]


def crop_dimensions(
    width: Optional[int],
    height: Optional[int],
    source: Dimensions,
    ar: AspectRatio,
) -> Dimensions:
  match (width, height):
    case (None, None):
      return source
    case (int(), None):
      return (width, ar.height_for(width))
    case (None, int()):
      return (ar.width_for(height), height)
    case (int(), int()):
      # Filled exactly, the resize crops whatever does not fit.
      return (width, height)
    case _:
      raise Exception('system error')


def clip_dimensions(
    width: Optional[int],
    height: Optional[int],
    source: Dimensions,
    ar: AspectRatio,
) -> Dimensions:
  match (width, height):
    case (None, None):
      return source
    case (int(), None):
      return (width, ar.height_for(width))
    case (None, int()):
      return (ar.width_for(height), height)
    case (int(), int()):
      if ar.ratio < AspectRatio.create(width, height).ratio:
        return (ar.width_for(height), height)
      return (width, ar.height_for(width))
    case _:
      raise Exception('system error')


def max_dimensions(
    width: Optional[int],
    height: Optional[int],
    source: Dimensions,
    ar: AspectRatio,
) -> Dimensions:
  source_width, source_height = source

  def by_width(w: int) -> Dimensions:
    new_width = min(w, source_width)
    return (new_width, min(ar.height_for(new_width), source_height))

  def by_height(h: int) -> Dimensions:
    new_height = min(h, source_height)
    return (min(ar.width_for(new_height), source_width), new_height)

  match (width, height):
    case (None, None):
      return source
    case (int(), None):
      return by_width(width)
    case (None, int()):
      return by_height(height)
    case (int(), int()):
      if ar.ratio < AspectRatio.create(width, height).ratio:
        return by_height(height)
      return by_width(width)
    case _:
      raise Exception('system error')


def resolve_dimensions(options: ImageOptions, source_width: int, source_height: int) -> None:
  """Overwrite `options.width` and `options.height` with the output size.

  The result honours the fit mode and aspect ratio and is already multiplied
  by the device pixel ratio.
  """
  dpr = options.dpr

  if options.aspect_ratio is None:
    ar = AspectRatio.create(source_width * dpr, source_height * dpr)
  else:
    ar = options.aspect_ratio

  source = (source_width, source_height)
  match options.fit:
    case Fit.CROP:
      width, height = crop_dimensions(options.width, options.height, source, ar)
    case Fit.MAX:
      width, height = max_dimensions(options.width, options.height, source, ar)
    case Fit.CLIP | None:
      width, height = clip_dimensions(options.width, options.height, source, ar)
    case _:
      raise Exception('system error')

  options.width = width * dpr
  options.height = height * dpr


def resize_scale(options: ImageOptions, source_width: int, source_height: int) -> float:
  if options.width is not None:
    scale_x = options.width / source_width
    if options.height is not None:
      return min(scale_x, options.height / source_height)
    return scale_x
  if options.height is not None:
    return options.height / source_height
  return 1.0
