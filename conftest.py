from typing import Callable

import pytest
from pyvips import Image  # type: ignore

from resizelambda.store import ObjectNotFound, StoredObject, StoreUnavailable
from resizelambda.typing import S3Key

JPEG_MIME = 'image/jpeg'
PNG_MIME = 'image/png'


class FakeStore:
  """In-memory ObjectStore that records every call."""

  def __init__(self) -> None:
    self.objects: dict[str, StoredObject] = {}
    self.cache_controls: dict[str, str] = {}
    self.gets: list[str] = []
    self.puts: list[str] = []
    self.get_unavailable = False
    self.put_unavailable = False

  def add(self, key: str, body: bytes, content_type: str) -> None:
    self.objects[key] = StoredObject(body=body, content_type=content_type)

  def get(self, key: S3Key) -> StoredObject:
    self.gets.append(key)
    if self.get_unavailable:
      raise StoreUnavailable(f'get {key}: unavailable')
    if key not in self.objects:
      raise ObjectNotFound(key)
    return self.objects[key]

  def put(self, key: S3Key, body: bytes, content_type: str, cache_control: str) -> None:
    self.puts.append(key)
    if self.put_unavailable:
      raise StoreUnavailable(f'put {key}: unavailable')
    self.objects[key] = StoredObject(body=body, content_type=content_type)
    self.cache_controls[key] = cache_control


def make_image(width: int, height: int, suffix: str) -> bytes:
  image = (Image.black(width, height) + [200, 120, 40]).cast('uchar')
  return image.write_to_buffer(suffix)


@pytest.fixture
def store() -> FakeStore:
  return FakeStore()


@pytest.fixture
def jpeg() -> Callable[[int, int], bytes]:
  return lambda width, height: make_image(width, height, '.jpg')


@pytest.fixture
def png() -> Callable[[int, int], bytes]:
  return lambda width, height: make_image(width, height, '.png')
