from pathlib import Path

from aws_lambda_powertools.utilities.typing import LambdaContext

from resizelambda.originresponse import index as originresponse
from resizelambda.typing import (
    OriginResponseEvent,
    Request,
    Response,
    ViewerRequestEvent
)
from resizelambda.viewerrequest import index as viewerrequest

# Lambda@Edge functions cannot read environment variables.
viewer_params = viewerrequest.ViewerParams.from_file(
    Path(__file__).resolve().with_name('viewer-config.json'))


def viewer_request_lambda_handler(
    event: ViewerRequestEvent,
    _: LambdaContext,
) -> Request:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  ret = viewerrequest.lambda_main(event, viewer_params)

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret


def origin_response_lambda_handler(
    event: OriginResponseEvent,
    _: LambdaContext,
) -> Response:
  # # For debugging
  # print('event:')
  # print(json.dumps(event))

  cf = event['Records'][0]['cf']
  ret = originresponse.lambda_main(cf['request'], cf['response'])

  # # For debugging
  # print('return:')
  # print(json.dumps(ret))

  return ret
