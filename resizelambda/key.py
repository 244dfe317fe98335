"""Canonical keys for resized variants.

A variant of ``<path>`` is stored at ``<path>[/w<width>][/h<height>]``. The
same key is the CDN cache identity (as the rewritten request path) and the
object store key, so it has to be a pure function of the normalized request.
"""

import dataclasses
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional
from urllib import parse

from resizelambda.typing import HttpPath, S3Key

DEFAULT_MAX_DIMENSION = 4096

dimension_re = re.compile(r'^\d+(\.\d+)?$')
dimension_segment_re = re.compile(r'^[wh]\d+$')
control_char_re = re.compile(r'[\x00-\x1f\x7f]')
key_re = re.compile(r'^(?P<source>.+?)(?:/w(?P<width>[1-9]\d*))?(?:/h(?P<height>[1-9]\d*))?$')


class InvalidRequest(Exception):
  pass


class InvalidDimension(InvalidRequest):
  pass


class InvalidPath(InvalidRequest):
  pass


def round_half_up(value: Decimal) -> int:
  return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def normalize_dimension(value: Optional[str | int], max_dimension: int) -> Optional[int]:
  """Return the dimension in whole pixels, or None when it was not requested.

  Strings are accepted in plain decimal notation only and rounded half up, so
  ``'200.5'`` becomes 201. The result must lie in ``[1, max_dimension]``.
  """
  if value is None:
    return None

  if isinstance(value, bool):
    raise InvalidDimension(f'not a number: {value!r}')

  if isinstance(value, int):
    pixels = value
  else:
    s = value.strip()
    if s == '':
      return None
    if dimension_re.match(s) is None:
      raise InvalidDimension(f'not a number: {value!r}')
    try:
      pixels = round_half_up(Decimal(s))
    except InvalidOperation as e:
      raise InvalidDimension(f'out of range: {value!r}') from e

  if pixels <= 0:
    raise InvalidDimension(f'not positive: {value!r}')
  if max_dimension < pixels:
    raise InvalidDimension(f'exceeds {max_dimension}: {value!r}')

  return pixels


def sanitize_path(path: str) -> S3Key:
  if path.startswith('/'):
    path = path[1:]

  if path == '':
    raise InvalidPath('empty path')
  if path.startswith('/'):
    raise InvalidPath(f'ambiguous leading slash: {path!r}')
  if '\\' in path or control_char_re.search(path) is not None:
    raise InvalidPath(f'forbidden character: {path!r}')

  segments = path.split('/')
  for segment in segments:
    if segment in ['', '.', '..']:
      raise InvalidPath(f'invalid segment: {path!r}')

  # Reserved for variant keys.
  if dimension_segment_re.match(segments[-1]) is not None:
    raise InvalidPath(f'reserved last segment: {path!r}')

  return S3Key(path)


@dataclasses.dataclass(eq=True, frozen=True)
class Variant:
  source: S3Key
  width: Optional[int] = None
  height: Optional[int] = None

  @classmethod
  def from_request(
      cls,
      path: str,
      width: Optional[str | int],
      height: Optional[str | int],
      max_dimension: int = DEFAULT_MAX_DIMENSION,
  ) -> 'Variant':
    return cls(
        source=sanitize_path(path),
        width=normalize_dimension(width, max_dimension),
        height=normalize_dimension(height, max_dimension))

  @property
  def is_resize(self) -> bool:
    return self.width is not None or self.height is not None

  @property
  def key(self) -> S3Key:
    key = self.source
    if self.width is not None:
      key += f'/w{self.width}'
    if self.height is not None:
      key += f'/h{self.height}'
    return S3Key(key)


def derive_key(
    original_path: str,
    width: Optional[str | int] = None,
    height: Optional[str | int] = None,
    max_dimension: int = DEFAULT_MAX_DIMENSION,
) -> S3Key:
  return Variant.from_request(original_path, width, height, max_dimension).key


def parse_key(key: S3Key, max_dimension: int = DEFAULT_MAX_DIMENSION) -> Variant:
  m = key_re.match(key)
  if m is None:
    raise InvalidPath(f'not a key: {key!r}')

  variant = Variant.from_request(m['source'], m['width'], m['height'], max_dimension)
  if variant.key != key:
    raise InvalidPath(f'not canonical: {key!r}')

  return variant


def key_from_path(path: HttpPath) -> S3Key:
  return S3Key(parse.unquote(path[1:]))


def path_from_key(key: S3Key) -> HttpPath:
  return HttpPath('/' + parse.quote(key))
