import base64
import dataclasses
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Optional, Tuple

from pyvips import Error, Image, Interesting  # type: ignore
from pyvips import Size as VipsSize  # type: ignore

from resizelambda.cachepolicy import (
    DEFAULT_TTL,
    HEIGHT_PARAM,
    MAX_TTL,
    MIN_TTL,
    WIDTH_PARAM,
    CachePolicy
)
from resizelambda.jsonlog import init_logging
from resizelambda.key import (
    DEFAULT_MAX_DIMENSION,
    InvalidRequest,
    Variant,
    key_from_path,
    parse_key,
    path_from_key,
    round_half_up
)
from resizelambda.store import (
    ObjectNotFound,
    ObjectStore,
    S3Store,
    StoredObject,
    StoreUnavailable,
    new_s3_client
)
from resizelambda.typing import HttpPath, Request, Response, S3Key

TEMP_RESP_MAX_AGE = 20 * 60
ERROR_RESP_MAX_AGE = 0
STORE_TIMEOUT = 5
STORE_MAX_ATTEMPTS = 3
RESIZE_TIMEOUT = 10
QUALITY = 80
# Lambda@Edge rejects larger generated responses.
MAX_BODY_SIZE = 1024 * 1024

logger = init_logging(__name__)


class ResizeFailed(Exception):
  pass


class Outcome(Enum):
  NOT_VARIANT = 0
  VARIANT_FOUND = 1
  ORIGIN_ERROR = 2
  ORIGINAL_MISSING = 3
  RESIZED = 4
  RESIZE_FAILED = 5
  STORE_UNAVAILABLE = 6


@dataclasses.dataclass(frozen=True)
class PassThrough:
  outcome: Outcome
  reason: str


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  outcome: Outcome
  status: int
  cache_control: str
  body: Optional[bytes] = None
  content_type: Optional[str] = None
  location: Optional[str] = None
  vips_us: Optional[int] = None


@dataclasses.dataclass(eq=True, frozen=True)
class ImageFormat:
  suffix: str
  content_type: str
  lossy: bool


FORMATS = {
    'jpegload_buffer': ImageFormat('.jpg', 'image/jpeg', True),
    'pngload_buffer': ImageFormat('.png', 'image/png', False),
    'webpload_buffer': ImageFormat('.webp', 'image/webp', True),
}


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


def scale_side(side: int, numerator: int, denominator: int) -> int:
  return max(1, round_half_up(Decimal(side * numerator) / Decimal(denominator)))


def calc_target(original: Size, width: Optional[int], height: Optional[int]) -> Optional[Size]:
  match (width, height):
    case (None, None):
      return None
    case (int(), None):
      return Size(width, scale_side(original.height, width, original.width))
    case (None, int()):
      return Size(scale_side(original.width, height, original.height), height)
    case (int(), int()):
      return Size(width, height)
    case _:
      raise Exception('system error')


def resize_image(data: bytes, variant: Variant, quality: int) -> Tuple[bytes, str]:
  """Resize ``data`` for ``variant``, keeping its format.

  The same input always yields the same bytes, which is what makes concurrent
  duplicate resizes harmless.
  """
  try:
    image: Image = Image.new_from_buffer(data, '')
    fmt = FORMATS.get(image.get('vips-loader'))
    if fmt is None:
      raise ResizeFailed(f"unsupported format: {image.get('vips-loader')}")

    # thumbnail_buffer autorotates.
    target = calc_target(Size.from_image(image.autorot()), variant.width, variant.height)
    if target is None:
      return data, fmt.content_type

    resized: Image = Image.thumbnail_buffer(
        data, target.width, height=target.height, crop=Interesting.CENTRE, size=VipsSize.BOTH)

    options = {'Q': quality} if fmt.lossy else {}
    return resized.write_to_buffer(fmt.suffix, **options), fmt.content_type
  except Error as e:
    raise ResizeFailed(str(e)) from e


@dataclasses.dataclass(eq=True, frozen=True)
class XParams:
  region: str
  bucket: str
  cache_policy: CachePolicy = CachePolicy()
  max_dimension: int = DEFAULT_MAX_DIMENSION
  temp_resp_max_age: int = TEMP_RESP_MAX_AGE
  error_resp_max_age: int = ERROR_RESP_MAX_AGE
  store_timeout: float = STORE_TIMEOUT
  store_max_attempts: int = STORE_MAX_ATTEMPTS
  resize_timeout: float = RESIZE_TIMEOUT
  quality: int = QUALITY
  max_body_size: int = MAX_BODY_SIZE


def get_header(req: Request, name: str) -> str:
  return req['origin']['s3']['customHeaders'][name][0]['value']


def get_header_or(req: Request, name: str, default: str = '') -> str:
  return (get_header(req, name) if name in req['origin']['s3']['customHeaders'] else default)


def xparams_from_request(req: Request) -> XParams:
  """Read the configuration the distribution passes as S3 origin headers.

  Raises KeyError when a required header is missing and ValueError when a
  value cannot be parsed.
  """
  return XParams(
      region=get_header(req, 'x-env-region'),
      bucket=req['origin']['s3']['domainName'].split('.', 1)[0],
      cache_policy=CachePolicy(
          default_ttl=int(get_header_or(req, 'x-env-perm-resp-max-age', str(DEFAULT_TTL))),
          min_ttl=int(get_header_or(req, 'x-env-min-ttl', str(MIN_TTL))),
          max_ttl=int(get_header_or(req, 'x-env-max-ttl', str(MAX_TTL))),
          width_param=get_header_or(req, 'x-env-width-param', WIDTH_PARAM),
          height_param=get_header_or(req, 'x-env-height-param', HEIGHT_PARAM)),
      max_dimension=int(get_header_or(req, 'x-env-max-dimension', str(DEFAULT_MAX_DIMENSION))),
      temp_resp_max_age=int(get_header_or(req, 'x-env-temp-resp-max-age', str(TEMP_RESP_MAX_AGE))),
      error_resp_max_age=int(get_header_or(req, 'x-env-error-max-age', str(ERROR_RESP_MAX_AGE))),
      store_timeout=float(get_header_or(req, 'x-env-store-timeout', str(STORE_TIMEOUT))),
      store_max_attempts=int(get_header_or(req, 'x-env-store-max-attempts',
                                           str(STORE_MAX_ATTEMPTS))),
      resize_timeout=float(get_header_or(req, 'x-env-resize-timeout', str(RESIZE_TIMEOUT))),
      quality=int(get_header_or(req, 'x-env-quality', str(QUALITY))),
      max_body_size=int(get_header_or(req, 'x-env-max-body-size', str(MAX_BODY_SIZE))))


class VariantServer:
  instances: dict[XParams, 'VariantServer'] = {}

  def __init__(self, log: Logger, store: ObjectStore, params: XParams):
    self.log = log
    self.store = store
    self.params = params
    self.log_context = {'path': '', 'qstr': ''}
    self.cache_control_perm = params.cache_policy.cache_control()
    self.cache_control_temp = f'public, max-age={params.temp_resp_max_age}'
    self.cache_control_error = f'public, max-age={params.error_resp_max_age}'

  @classmethod
  def from_lambda(cls, log: Logger, req: Request) -> Optional['VariantServer']:
    try:
      params = xparams_from_request(req)
    except (KeyError, ValueError) as e:
      log.warning({
          'message': 'environment variable not found',
          'key': str(e),
      })
      return None

    if params not in cls.instances:
      s3 = new_s3_client(params.region, params.store_timeout, params.store_max_attempts)
      cls.instances[params] = cls(log=log, store=S3Store(s3, params.bucket), params=params)

    return cls.instances[params]

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def set_log_context(self, path: HttpPath, qstr: str) -> None:
    self.log_context = {'path': str(path), 'qstr': qstr}

  def location(self, key: S3Key, qstr: str) -> str:
    path = path_from_key(key)
    return path if qstr == '' else f'{path}?{qstr}'

  def fits_body(self, body: bytes) -> bool:
    # Size once base64 encoded.
    return 4 * ((len(body) + 2) // 3) <= self.params.max_body_size

  def redirect(self, outcome: Outcome, key: S3Key, qstr: str) -> InstantResponse:
    return InstantResponse(
        outcome=outcome,
        status=HTTPStatus.TEMPORARY_REDIRECT,
        cache_control=self.cache_control_temp,
        location=self.location(key, qstr))

  def resize_with_timeout(self, data: bytes, variant: Variant) -> Tuple[bytes, str]:
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(resize_image, data, variant, self.params.quality)
    try:
      return future.result(timeout=self.params.resize_timeout)
    except TimeoutError as e:
      raise ResizeFailed(f'timed out after {self.params.resize_timeout}s') from e
    finally:
      # Abandoned work mutates nothing.
      executor.shutdown(wait=False, cancel_futures=True)

  def fallback(
      self,
      outcome: Outcome,
      original: StoredObject,
      variant: Variant,
      qstr: str,
  ) -> InstantResponse:
    if not self.fits_body(original.body):
      self.log_debug('original too large to inline', {'img_size': len(original.body)})
      return self.redirect(outcome, variant.source, qstr)

    return InstantResponse(
        outcome=outcome,
        status=HTTPStatus.OK,
        cache_control=self.cache_control_temp,
        body=original.body,
        content_type=original.content_type)

  def process_missing(self, variant: Variant, qstr: str) -> InstantResponse:
    try:
      original = self.store.get(variant.source)
    except ObjectNotFound:
      return InstantResponse(
          outcome=Outcome.ORIGINAL_MISSING,
          status=HTTPStatus.NOT_FOUND,
          cache_control=self.cache_control_error)
    except StoreUnavailable as e:
      self.log_warning('failed to read original', {'reason': str(e), 'key': variant.source})
      return self.redirect(Outcome.STORE_UNAVAILABLE, variant.source, qstr)

    start_ns = time.time_ns()
    try:
      body, content_type = self.resize_with_timeout(original.body, variant)
    except ResizeFailed as e:
      self.log_warning('failed to resize', {'reason': str(e), 'key': variant.source})
      return self.fallback(Outcome.RESIZE_FAILED, original, variant, qstr)
    vips_us = (time.time_ns() - start_ns) // 1000

    try:
      self.store.put(variant.key, body, content_type, self.cache_control_perm)
    except StoreUnavailable as e:
      self.log_warning('failed to persist variant', {'reason': str(e), 'key': variant.key})
      return self.fallback(Outcome.STORE_UNAVAILABLE, original, variant, qstr)

    # The stored variant is served by the origin on the next request.
    if not self.fits_body(body):
      self.log_debug('variant too large to inline', {'img_size': len(body), 'vips_us': vips_us})
      return self.redirect(Outcome.RESIZED, variant.key, qstr)

    return InstantResponse(
        outcome=Outcome.RESIZED,
        status=HTTPStatus.OK,
        cache_control=self.cache_control_perm,
        body=body,
        content_type=content_type,
        vips_us=vips_us)

  def process(self, key: S3Key, status: int, qstr: str) -> PassThrough | InstantResponse:
    try:
      variant = parse_key(key, self.params.max_dimension)
    except InvalidRequest as e:
      return PassThrough(outcome=Outcome.NOT_VARIANT, reason=f'{type(e).__name__}: {e}')

    if not variant.is_resize:
      return PassThrough(outcome=Outcome.NOT_VARIANT, reason='no dimension')

    if 200 <= status < 300 or status == HTTPStatus.NOT_MODIFIED:
      return PassThrough(outcome=Outcome.VARIANT_FOUND, reason='gen found')

    # S3 answers 403 instead of 404 when the reader may not list the bucket.
    if status not in [HTTPStatus.FORBIDDEN, HTTPStatus.NOT_FOUND]:
      return PassThrough(outcome=Outcome.ORIGIN_ERROR, reason=f'origin status {status}')

    return self.process_missing(variant, qstr)


def to_response(result: InstantResponse) -> Response:
  response: Response = {
      'status': str(int(result.status)),
      'statusDescription': HTTPStatus(result.status).phrase,
      'headers': {
          'cache-control': [{
              'key': 'Cache-Control',
              'value': result.cache_control,
          }],
      },
  }

  if result.content_type is not None:
    response['headers']['content-type'] = [{'key': 'Content-Type', 'value': result.content_type}]

  if result.location is not None:
    response['headers']['location'] = [{'key': 'Location', 'value': result.location}]

  if result.body is not None:
    response['body'] = base64.b64encode(result.body).decode()
    response['bodyEncoding'] = 'base64'

  return response


def transform(req: Request, res: Response, server: VariantServer) -> Response:
  path = req['uri']
  qstr = req['querystring']
  server.set_log_context(path, qstr)

  try:
    result = server.process(key_from_path(path), int(res['status']), qstr)
  except Exception as e:
    server.log_error('error during process()', {'reason': str(e)})
    return res

  if isinstance(result, PassThrough):
    server.log_debug('passed through', {
        'outcome': result.outcome.name,
        'reason': result.reason,
        'status': res['status'],
    })
    return res

  server.log_debug(
      'responded', {
          'outcome': result.outcome.name,
          'status': int(result.status),
          'cache_control': result.cache_control,
          'content_type': result.content_type,
          'img_size': None if result.body is None else len(result.body),
          'vips_us': result.vips_us,
      })

  return to_response(result)


def lambda_main(req: Request, res: Response) -> Response:
  server = VariantServer.from_lambda(logger, req)
  if server is None:
    return res

  return transform(req, res, server)
