import json
import logging
from logging import Logger
from pathlib import Path
from typing import Any, Dict, List, NotRequired, TypedDict

import pytest

from resizelambda.cachepolicy import CachePolicy
from resizelambda.typing import HttpPath, Request, ViewerRequestEvent

from .index import (
    RequestRewriter,
    Rewrite,
    ViewerParams,
    lambda_main,
    split_querystring,
    transform
)

CAT_NAME = 'cat.jpg'
CAT_NAME_MB_Q = '%E3%83%86%E3%82%B9%E3%83%88.jpg'


def new_request(uri: str, querystring: str) -> Request:
  return {
      'method': 'GET',
      'uri': HttpPath(uri),
      'querystring': querystring,
      'headers': {
          'host': [{
              'key': 'Host',
              'value': 'd111111abcdef8.cloudfront.net',
          }],
      },
      'clientIp': '203.0.113.178',
  }


def new_event(uri: str, querystring: str) -> ViewerRequestEvent:
  return {
      'Records': [{
          'cf': {
              'config': {
                  'distributionDomainName': 'd111111abcdef8.cloudfront.net',
                  'distributionId': 'EDFDVBD6EXAMPLE',
                  'eventType': 'viewer-request',
                  'requestId': '4TyzHTaYWb1GX1qTfsHhEqV6HUDd_BzoBZnwfnvQc_1oF26ClkoUSEQ==',
              },
              'request': new_request(uri, querystring),
          },
      }],
  }


@pytest.fixture
def logger() -> Logger:
  return logging.getLogger(__name__)


class Parameters(TypedDict):
  id: str
  uri: str
  querystring: str
  params: NotRequired[ViewerParams]
  expected_uri: NotRequired[str]
  expected_querystring: NotRequired[str]
  expected_reason: str


def parameters(params: List[Parameters]) -> Dict[str, Any]:
  values: List[List[Any]] = []
  ids = []

  for param in params:
    ids.append(param['id'])
    values.append(
        [
            param.get('params', ViewerParams()),
            param['uri'],
            param['querystring'],
            param.get('expected_uri', param['uri']),
            param.get('expected_querystring', ''),
            param['expected_reason'],
        ])

  return {
      'argnames': [
          'params',
          'uri',
          'querystring',
          'expected_uri',
          'expected_querystring',
          'expected_reason',
      ],
      'argvalues': values,
      'ids': ids,
  }


@pytest.mark.parametrize(
    **parameters(
        [
            {
                'id': 'both',
                'uri': f'/{CAT_NAME}',
                'querystring': 'width=200&height=100',
                'expected_uri': f'/{CAT_NAME}/w200/h100',
                'expected_reason': 'rewritten',
            },
            {
                'id': 'both/reversed',
                'uri': f'/{CAT_NAME}',
                'querystring': 'height=100&width=200',
                'expected_uri': f'/{CAT_NAME}/w200/h100',
                'expected_reason': 'rewritten',
            },
            {
                'id': 'width',
                'uri': f'/{CAT_NAME}',
                'querystring': 'width=200',
                'expected_uri': f'/{CAT_NAME}/w200',
                'expected_reason': 'rewritten',
            },
            {
                'id': 'height',
                'uri': f'/{CAT_NAME}',
                'querystring': 'height=100',
                'expected_uri': f'/{CAT_NAME}/h100',
                'expected_reason': 'rewritten',
            },
            {
                'id': 'other-params-kept',
                'uri': f'/{CAT_NAME}',
                'querystring': 'utm_source=mail&width=200&v=%20x',
                'expected_uri': f'/{CAT_NAME}/w200',
                'expected_querystring': 'utm_source=mail&v=%20x',
                'expected_reason': 'rewritten',
            },
            {
                'id': 'first-value-wins',
                'uri': f'/{CAT_NAME}',
                'querystring': 'width=200&width=300',
                'expected_uri': f'/{CAT_NAME}/w200',
                'expected_reason': 'rewritten',
            },
            {
                'id': 'rounded',
                'uri': f'/{CAT_NAME}',
                'querystring': 'width=199.6',
                'expected_uri': f'/{CAT_NAME}/w200',
                'expected_reason': 'rewritten',
            },
            {
                'id': 'multibyte',
                'uri': f'/dir/{CAT_NAME_MB_Q}',
                'querystring': 'width=200',
                'expected_uri': f'/dir/{CAT_NAME_MB_Q}/w200',
                'expected_reason': 'rewritten',
            },
            {
                'id': 'upper-ext',
                'uri': '/CAT.JPG',
                'querystring': 'width=200',
                'expected_uri': '/CAT.JPG/w200',
                'expected_reason': 'rewritten',
            },
            {
                'id': 'no-dimension',
                'uri': f'/{CAT_NAME}',
                'querystring': 'v=2',
                'expected_querystring': 'v=2',
                'expected_reason': 'no dimension',
            },
            {
                'id': 'empty-dimension',
                'uri': f'/{CAT_NAME}',
                'querystring': 'width=&v=2',
                'expected_querystring': 'v=2',
                'expected_reason': 'no dimension',
            },
            {
                'id': 'negative',
                'uri': f'/{CAT_NAME}',
                'querystring': 'width=-5',
                'expected_reason': 'invalid',
            },
            {
                'id': 'non-numeric',
                'uri': f'/{CAT_NAME}',
                'querystring': 'width=abc&height=100&v=2',
                'expected_querystring': 'v=2',
                'expected_reason': 'invalid',
            },
            {
                'id': 'zero',
                'uri': f'/{CAT_NAME}',
                'querystring': 'height=0',
                'expected_reason': 'invalid',
            },
            {
                'id': 'too-large',
                'uri': f'/{CAT_NAME}',
                'querystring': 'width=4097',
                'expected_reason': 'invalid',
            },
            {
                'id': 'configured-max',
                'uri': f'/{CAT_NAME}',
                'querystring': 'width=1001',
                'params': ViewerParams(max_dimension=1000),
                'expected_reason': 'invalid',
            },
            {
                'id': 'traversal',
                'uri': f'/../{CAT_NAME}',
                'querystring': 'width=200',
                'expected_reason': 'invalid',
            },
            {
                'id': 'encoded-traversal',
                'uri': f'/a/%2E%2E/{CAT_NAME}',
                'querystring': 'width=200',
                'expected_reason': 'invalid',
            },
            {
                'id': 'noprocess',
                'uri': '/style.css',
                'querystring': 'width=200',
                'expected_reason': 'noprocess',
            },
            {
                'id': 'bypassed',
                'uri': f'/static/{CAT_NAME}',
                'querystring': 'width=200',
                'params': ViewerParams(bypass_patterns=('/static/**',)),
                'expected_reason': 'bypassed',
            },
            {
                'id': 'not-bypassed',
                'uri': f'/images/{CAT_NAME}',
                'querystring': 'width=200',
                'params': ViewerParams(bypass_patterns=('/static/**',)),
                'expected_uri': f'/images/{CAT_NAME}/w200',
                'expected_reason': 'rewritten',
            },
            {
                'id': 'custom-params',
                'uri': f'/{CAT_NAME}',
                'querystring': 'w=200&h=100&width=1',
                'params': ViewerParams(cache_policy=CachePolicy(width_param='w', height_param='h')),
                'expected_uri': f'/{CAT_NAME}/w200/h100',
                'expected_querystring': 'width=1',
                'expected_reason': 'rewritten',
            },
        ]))
def test_process(
    logger: Logger,
    params: ViewerParams,
    uri: str,
    querystring: str,
    expected_uri: str,
    expected_querystring: str,
    expected_reason: str,
) -> None:
  rewriter = RequestRewriter(logger, params)
  result = rewriter.process(HttpPath(uri), querystring)

  assert result.reason == expected_reason
  assert result.querystring == expected_querystring

  req = transform(new_request(uri, querystring), params)

  assert req['uri'] == expected_uri
  assert req['querystring'] == expected_querystring


def test_scenario_invalid_dimension_passes_through() -> None:
  req = lambda_main(new_event(f'/{CAT_NAME}', 'width=-5'), ViewerParams())

  assert req['uri'] == f'/{CAT_NAME}'
  assert req['querystring'] == ''
  assert req['headers']['host'][0]['value'] == 'd111111abcdef8.cloudfront.net'


def test_rewritten_request_is_stable(logger: Logger) -> None:
  rewriter = RequestRewriter(logger, ViewerParams())
  first = rewriter.process(HttpPath(f'/{CAT_NAME}'), 'width=200&height=100')
  second = rewriter.process(HttpPath(f'/{CAT_NAME}'), 'height=100.0&width=200')

  assert first == second == Rewrite(
      reason='rewritten', querystring='', uri=HttpPath(f'/{CAT_NAME}/w200/h100'))


def test_never_raises(monkeypatch: pytest.MonkeyPatch) -> None:

  def broken(self: RequestRewriter, path: HttpPath, qstr: str) -> Rewrite:
    raise RuntimeError('broken')

  monkeypatch.setattr(RequestRewriter, 'process', broken)

  req = transform(new_request(f'/{CAT_NAME}', 'width=200&v=1'), ViewerParams())

  assert req['uri'] == f'/{CAT_NAME}'
  assert req['querystring'] == 'v=1'


def test_overlong_dimension_passes_through() -> None:
  req = transform(new_request(f'/{CAT_NAME}', 'width=' + '9' * 30), ViewerParams())

  assert req['uri'] == f'/{CAT_NAME}'
  assert req['querystring'] == ''


def test_split_querystring() -> None:
  dims, rest = split_querystring('a=1&width=2&&height=3+4&b', CachePolicy())

  assert dims == {'width': '2', 'height': '3 4'}
  assert rest == 'a=1&b'


def test_params_from_file(tmp_path: Path) -> None:
  path = tmp_path / 'viewer-config.json'
  path.write_text(
      json.dumps({
          'maxDimension': 2000,
          'bypassPatterns': ['/static/**'],
          'widthParam': 'w',
          'heightParam': 'h',
      }))

  assert ViewerParams.from_file(path) == ViewerParams(
      max_dimension=2000,
      bypass_patterns=('/static/**',),
      cache_policy=CachePolicy(width_param='w', height_param='h'))


def test_params_from_missing_file(tmp_path: Path) -> None:
  assert ViewerParams.from_file(tmp_path / 'missing.json') == ViewerParams()


def test_bundled_params() -> None:
  path = Path(__file__).resolve().parents[2] / 'viewer-config.json'

  assert ViewerParams.from_file(path) == ViewerParams()
