from typing import Literal, NewType, NotRequired, ReadOnly, TypedDict

HttpPath = NewType('HttpPath', str)
S3Key = NewType('S3Key', str)


class Header(TypedDict):
  key: NotRequired[ReadOnly[str]]
  value: str


class S3Origin(TypedDict):
  customHeaders: dict[str, list[Header]]
  domainName: str
  path: str
  readTimeout: int
  responseCompletionTimeout: int
  authMethod: Literal['origin-access-identity', 'none']


class Origin(TypedDict):
  s3: NotRequired[S3Origin]


class Request(TypedDict):
  method: ReadOnly[Literal['GET', 'HEAD', 'OPTIONS', 'TRACE', 'PUT', 'DELETE', 'POST', 'PATCH',
                           'CONNECT']]
  uri: HttpPath
  querystring: str
  headers: dict[str, list[Header]]
  clientIp: ReadOnly[str]
  # Viewer request events carry no origin.
  origin: NotRequired[Origin]


class ViewerRequestConfig(TypedDict):
  distributionDomainName: ReadOnly[str]
  distributionId: ReadOnly[str]
  eventType: ReadOnly[Literal['viewer-request']]
  requestId: ReadOnly[str]


class ViewerRequestRecord(TypedDict):
  config: ReadOnly[ViewerRequestConfig]
  request: Request


class ViewerRequestRecordContainer(TypedDict):
  cf: ViewerRequestRecord


class ViewerRequestEvent(TypedDict):
  Records: list[ViewerRequestRecordContainer]


class OriginResponseConfig(TypedDict):
  distributionDomainName: ReadOnly[str]
  distributionId: ReadOnly[str]
  eventType: ReadOnly[Literal['origin-response']]
  requestId: ReadOnly[str]


class Response(TypedDict):
  headers: dict[str, list[Header]]
  status: str
  statusDescription: str
  body: NotRequired[str]
  bodyEncoding: NotRequired[Literal['text', 'base64']]


class OriginResponseRecord(TypedDict):
  config: ReadOnly[OriginResponseConfig]
  request: Request
  response: Response


class OriginResponseRecordContainer(TypedDict):
  cf: OriginResponseRecord


class OriginResponseEvent(TypedDict):
  Records: list[OriginResponseRecordContainer]
