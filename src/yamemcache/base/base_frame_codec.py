from abc import ABC, abstractmethod
from typing import Optional

from yamemcache.protocol import Buffer, DecodedFrame, Request


class BaseFrameCodec(ABC):
    """
    Turns requests into wire bytes and wire bytes into response frames.

    No I/O happens here. `decode` works on a growing buffer: it returns
    None when the buffer doesn't hold a complete response yet, so the
    caller should read more and retry from the same position.
    """

    def encode(self, request: Request) -> bytes:
        request.validate()
        return self._encode(request)

    @abstractmethod
    def _encode(self, request: Request) -> bytes: ...

    @abstractmethod
    def decode(self, buffer: Buffer, start: int = 0) -> Optional[DecodedFrame]: ...
