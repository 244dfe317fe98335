import dataclasses
import json
import os
from logging import Logger
from pathlib import Path
from typing import Any, Optional
from urllib import parse

from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern

from resizelambda.cachepolicy import CachePolicy
from resizelambda.jsonlog import init_logging
from resizelambda.key import (
    DEFAULT_MAX_DIMENSION,
    InvalidRequest,
    Variant,
    path_from_key
)
from resizelambda.typing import HttpPath, Request, ViewerRequestEvent

RESIZABLE_EXTS = ['.jpg', '.jpeg', '.png', '.webp']

logger = init_logging(__name__)


@dataclasses.dataclass(eq=True, frozen=True)
class ViewerParams:
  max_dimension: int = DEFAULT_MAX_DIMENSION
  bypass_patterns: tuple[str, ...] = ()
  cache_policy: CachePolicy = CachePolicy()

  @classmethod
  def from_dict(cls, d: dict[str, Any]) -> 'ViewerParams':
    return cls(
        max_dimension=int(d.get('maxDimension', DEFAULT_MAX_DIMENSION)),
        bypass_patterns=tuple(d.get('bypassPatterns', [])),
        cache_policy=CachePolicy(
            width_param=d.get('widthParam', CachePolicy.width_param),
            height_param=d.get('heightParam', CachePolicy.height_param)))

  @classmethod
  def from_file(cls, path: Path) -> 'ViewerParams':
    if not path.exists():
      return cls()
    with open(path, 'r') as f:
      return cls.from_dict(json.load(f))


@dataclasses.dataclass(eq=True, frozen=True)
class Rewrite:
  reason: str
  querystring: str
  uri: Optional[HttpPath] = None


def split_querystring(qstr: str, policy: CachePolicy) -> tuple[dict[str, str], str]:
  """Separate the dimension parameters from the rest of the query string.

  The rest is kept verbatim so that re-encoding never changes what the origin
  sees.
  """
  dims: dict[str, str] = {}
  rest: list[str] = []

  for pair in qstr.split('&'):
    if pair == '':
      continue
    name, _, value = pair.partition('=')
    name = parse.unquote_plus(name)
    if not policy.is_dimension_param(name):
      rest.append(pair)
      continue
    value = parse.unquote_plus(value)
    # The first non-empty value wins.
    if dims.get(name, '') == '':
      dims[name] = value

  return dims, '&'.join(rest)


def get_normalized_extension(path: str) -> str:
  _, ext = os.path.splitext(path.lower())
  return ext


class RequestRewriter:
  instances: dict[ViewerParams, 'RequestRewriter'] = {}

  def __init__(self, log: Logger, params: ViewerParams):
    self.log = log
    self.params = params
    self.policy = params.cache_policy
    self.bypass_path_spec = (
        None if len(params.bypass_patterns) == 0 else PathSpec.from_lines(
            GitWildMatchPattern, params.bypass_patterns))
    self.log_context = {'path': '', 'qstr': ''}

  @classmethod
  def get(cls, log: Logger, params: ViewerParams) -> 'RequestRewriter':
    if params not in cls.instances:
      cls.instances[params] = cls(log, params)
    return cls.instances[params]

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

  def process(self, path: HttpPath, qstr: str) -> Rewrite:
    dims, rest = split_querystring(qstr, self.policy)
    width = dims.get(self.policy.width_param, '')
    height = dims.get(self.policy.height_param, '')

    if width == '' and height == '':
      return Rewrite(reason='no dimension', querystring=rest)

    original = parse.unquote(path)

    if self.bypass_path_spec is not None and self.bypass_path_spec.match_file(original):
      return Rewrite(reason='bypassed', querystring=rest)

    if get_normalized_extension(original) not in RESIZABLE_EXTS:
      return Rewrite(reason='noprocess', querystring=rest)

    try:
      variant = Variant.from_request(original, width, height, self.params.max_dimension)
    except InvalidRequest as e:
      self.log_debug('invalid request', {'reason': str(e), 'error': type(e).__name__})
      return Rewrite(reason='invalid', querystring=rest)

    return Rewrite(reason='rewritten', querystring=rest, uri=path_from_key(variant.key))


def transform(req: Request, params: ViewerParams) -> Request:
  """Rewrite a viewer request to its canonical key. Never raises."""
  path = req['uri']
  qstr = req['querystring']

  rewriter = RequestRewriter.get(logger, params)
  rewriter.set_log_context(path, qstr)

  try:
    result = rewriter.process(path, qstr)
  except Exception as e:
    rewriter.log_error('error during process()', {'reason': str(e)})
    # Dimension parameters never reach the origin unnormalized.
    req['querystring'] = split_querystring(qstr, params.cache_policy)[1]
    return req

  if result.uri is not None:
    req['uri'] = result.uri
  req['querystring'] = result.querystring

  rewriter.log_debug(
      'done', {
          'uri': req['uri'],
          'querystring': req['querystring'],
          'reason': result.reason,
          'cache_key': params.cache_policy.cache_key(req['uri'], req['querystring']),
      })

  return req


def lambda_main(event: ViewerRequestEvent, params: ViewerParams) -> Request:
  return transform(event['Records'][0]['cf']['request'], params)
