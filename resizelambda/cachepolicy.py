import dataclasses
from urllib import parse

from resizelambda.typing import HttpPath

DAY = 24 * 60 * 60

DEFAULT_TTL = 365 * DAY
MIN_TTL = 90 * DAY
MAX_TTL = 2 * 365 * DAY

WIDTH_PARAM = 'width'
HEIGHT_PARAM = 'height'


@dataclasses.dataclass(eq=True, frozen=True)
class CachePolicy:
  """TTLs and cache-key composition the CDN applies around the edge functions.

  Resized variants never change once written, so they are cached for
  ``default_ttl`` and marked immutable. Only ``query_params`` take part in the
  cache key.
  """
  default_ttl: int = DEFAULT_TTL
  min_ttl: int = MIN_TTL
  max_ttl: int = MAX_TTL
  width_param: str = WIDTH_PARAM
  height_param: str = HEIGHT_PARAM

  def __post_init__(self) -> None:
    if not 0 <= self.min_ttl <= self.default_ttl <= self.max_ttl:
      raise ValueError(
          f'Invalid TTLs: min: {self.min_ttl}, default: {self.default_ttl}, max: {self.max_ttl}')
    if self.width_param == self.height_param:
      raise ValueError(f'Same name for width and height: {self.width_param}')

  @property
  def query_params(self) -> tuple[str, str]:
    return (self.width_param, self.height_param)

  def is_dimension_param(self, name: str) -> bool:
    return name in self.query_params

  def clamp(self, ttl: int) -> int:
    return min(max(ttl, self.min_ttl), self.max_ttl)

  def cache_control(self) -> str:
    return f'public, max-age={self.clamp(self.default_ttl)}, immutable'

  def cache_key(self, uri: HttpPath, querystring: str) -> str:
    qs = parse.parse_qsl(querystring, keep_blank_values=True)
    allowed = sorted((k, v) for k, v in qs if self.is_dimension_param(k))
    if len(allowed) == 0:
      return uri
    return f'{uri}?{parse.urlencode(allowed)}'
