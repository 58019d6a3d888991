__version__ = "0.1.0"

from yamemcache.base.base_frame_codec import BaseFrameCodec
from yamemcache.base.base_value_codec import BaseValueCodec, EncodedValue
from yamemcache.cache_client import CacheClient, CasOutcome, Item
from yamemcache.configuration import (
    ServerAddress,
    build_frame_codec,
    connection_factory_builder,
    transport_factory_builder,
)
from yamemcache.connection.driver import (
    Connection,
    ConnectionCounters,
    ConnectionState,
)
from yamemcache.connection.transport import StreamTransport
from yamemcache.errors import (
    BadKeyError,
    BadQueryError,
    ClientError,
    ConnectionLostError,
    DecodeError,
    LengthMismatchError,
    MemcacheError,
    MemcacheServerError,
    OperationTimeoutError,
    ProtocolError,
    UnrecognizedReplyError,
)
from yamemcache.events.connection_closed_event import ConnectionClosedEvent
from yamemcache.framing.binary import BinaryFrameCodec
from yamemcache.framing.text import TextFrameCodec
from yamemcache.interfaces.transport import Transport
from yamemcache.protocol import (
    Command,
    Conflict,
    Counter,
    Key,
    Miss,
    NotStored,
    Request,
    Success,
    Value,
    Values,
    VersionReply,
    WireProtocol,
)
from yamemcache.value_codecs import BytesCodec, MixedCodec, ZstdCodec
