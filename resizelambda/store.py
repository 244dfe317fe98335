import dataclasses
from typing import Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3.client import S3Client

from resizelambda.typing import S3Key

DEFAULT_CONTENT_TYPE = 'application/octet-stream'


class ObjectNotFound(Exception):
  pass


class StoreUnavailable(Exception):
  pass


@dataclasses.dataclass(frozen=True)
class StoredObject:
  body: bytes
  content_type: str


class ObjectStore(Protocol):

  def get(self, key: S3Key) -> StoredObject:
    ...

  def put(self, key: S3Key, body: bytes, content_type: str, cache_control: str) -> None:
    ...


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


def new_s3_client(region: str, timeout: float, max_attempts: int) -> S3Client:
  config = Config(
      connect_timeout=timeout,
      read_timeout=timeout,
      retries={
          'mode': 'standard',
          'max_attempts': max_attempts,
      })
  return boto3.client('s3', region_name=region, config=config)


class S3Store:

  def __init__(self, s3: S3Client, bucket: str):
    self.s3 = s3
    self.bucket = bucket

  def get(self, key: S3Key) -> StoredObject:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=key)
      body = res['Body'].read()
    except ClientError as e:
      if is_not_found_client_error(e):
        raise ObjectNotFound(key) from e
      raise StoreUnavailable(f'get {key}: {e}') from e
    except BotoCoreError as e:
      raise StoreUnavailable(f'get {key}: {e}') from e

    return StoredObject(body=body, content_type=res.get('ContentType', DEFAULT_CONTENT_TYPE))

  def put(self, key: S3Key, body: bytes, content_type: str, cache_control: str) -> None:
    try:
      self.s3.put_object(
          Bucket=self.bucket,
          Key=key,
          Body=body,
          ContentType=content_type,
          CacheControl=cache_control)
    except (ClientError, BotoCoreError) as e:
      raise StoreUnavailable(f'put {key}: {e}') from e
