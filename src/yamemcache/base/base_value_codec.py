from abc import ABC, abstractmethod
from typing import Generic, NamedTuple, TypeVar

from yamemcache.protocol import Blob

T = TypeVar("T")


class EncodedValue(NamedTuple):
    data: bytes
    # Stored verbatim in the memcached client flags field
    flags: int


class BaseValueCodec(ABC, Generic[T]):
    """
    Converts caller values to the bytes and flags stored in memcached,
    and back.

    The flags are the only metadata memcached keeps alongside the
    data, so codecs usually record the encoding there. Whatever flags
    `encode` returns are handed back untouched to `decode`.
    """

    @abstractmethod
    def encode(self, value: T) -> EncodedValue: ...

    @abstractmethod
    def decode(self, data: Blob, flags: int) -> T: ...
