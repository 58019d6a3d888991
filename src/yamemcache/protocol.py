from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, NamedTuple, Optional, Tuple, Union

from yamemcache.errors import BadKeyError
from yamemcache.settings import MAX_KEY_SIZE

ENDL = b"\r\n"
ENDL_LEN = 2
SPACE: int = ord(" ")

MAX_CLIENT_FLAG = 2**32 - 1
MAX_CAS_TOKEN = 2**64 - 1
MAX_DELTA = 2**64 - 1

Blob = Union[bytes, bytearray, memoryview]
Buffer = Union[bytes, bytearray]


def is_valid_key(key: bytes) -> bool:
    """
    Keys are printable ASCII: no spaces, no control characters
    and nothing above 0x7e.
    """
    if not 0 < len(key) <= MAX_KEY_SIZE:
        return False
    for b in key:
        if b <= SPACE or b >= 127:
            return False
    return True


@dataclass
class Key:
    __slots__ = ("key",)
    key: bytes

    def __init__(self, key: Union[str, bytes]) -> None:
        if isinstance(key, str):
            try:
                key = key.encode("ascii")
            except UnicodeEncodeError as e:
                raise BadKeyError(f"Key must be ASCII: {key!r}") from e
        elif not isinstance(key, bytes):
            raise BadKeyError(f"Key must be str or bytes, got {type(key)}")
        if not is_valid_key(key):
            raise BadKeyError(f"Invalid key: {key!r}")
        self.key = key

    def __hash__(self) -> int:
        return hash(self.key)

    def __str__(self) -> str:
        return self.key.decode("ascii")


AnyKey = Union[Key, str, bytes]


def as_key(key: AnyKey) -> Key:
    return key if isinstance(key, Key) else Key(key)


class WireProtocol(Enum):
    TEXT = "text"
    BINARY = "binary"


class Command(Enum):
    GET = b"get"
    GETS = b"gets"  # Get, also returning the cas token
    SET = b"set"
    ADD = b"add"  # Store only if the item does NOT exist
    REPLACE = b"replace"  # Store only if the item exists
    APPEND = b"append"
    PREPEND = b"prepend"
    CAS = b"cas"  # Store only if nobody updated the item since we read it
    DELETE = b"delete"
    INCR = b"incr"
    DECR = b"decr"
    TOUCH = b"touch"
    VERSION = b"version"


RETRIEVAL_COMMANDS: FrozenSet[Command] = frozenset({Command.GET, Command.GETS})
STORAGE_COMMANDS: FrozenSet[Command] = frozenset(
    {
        Command.SET,
        Command.ADD,
        Command.REPLACE,
        Command.APPEND,
        Command.PREPEND,
        Command.CAS,
    }
)
ARITHMETIC_COMMANDS: FrozenSet[Command] = frozenset({Command.INCR, Command.DECR})


@dataclass
class Request:
    command: Command
    keys: Tuple[Key, ...] = ()
    value: Optional[bytes] = None
    client_flag: int = 0
    exptime: int = 0
    cas_token: Optional[int] = None
    delta: Optional[int] = None
    # Correlation id, assigned by the connection when the request is submitted
    request_id: int = 0

    @property
    def key(self) -> Key:
        return self.keys[0]

    @property
    def opaque(self) -> int:
        return self.request_id & 0xFFFFFFFF

    def validate(self) -> None:  # noqa: C901
        command = self.command
        if command in RETRIEVAL_COMMANDS:
            if not self.keys:
                raise ValueError(f"{command.name} needs at least one key")
        elif command == Command.VERSION:
            if self.keys:
                raise ValueError("VERSION takes no keys")
        elif len(self.keys) != 1:
            raise ValueError(f"{command.name} needs exactly one key")

        if command in STORAGE_COMMANDS:
            if self.value is None:
                raise ValueError(f"{command.name} needs a value")
            if not 0 <= self.client_flag <= MAX_CLIENT_FLAG:
                raise ValueError(f"Flags out of range: {self.client_flag}")
        if command == Command.CAS:
            if self.cas_token is None or not 0 < self.cas_token <= MAX_CAS_TOKEN:
                raise ValueError(f"Invalid cas token: {self.cas_token}")
        if command in ARITHMETIC_COMMANDS:
            if self.delta is None or not 0 <= self.delta <= MAX_DELTA:
                raise ValueError(f"Invalid delta: {self.delta}")


class MemcacheResponse:
    __slots__ = ()


@dataclass
class Success(MemcacheResponse):
    __slots__ = ("cas_token",)
    cas_token: Optional[int]

    def __init__(self, cas_token: Optional[int] = None) -> None:
        self.cas_token = cas_token


@dataclass
class Miss(MemcacheResponse):
    __slots__ = ()


@dataclass
class NotStored(MemcacheResponse):
    __slots__ = ()


@dataclass
class Conflict(MemcacheResponse):
    __slots__ = ()


@dataclass
class Value(MemcacheResponse):
    __slots__ = ("key", "data", "client_flag", "cas_token")
    key: bytes
    data: bytes
    client_flag: int
    cas_token: Optional[int]

    def __init__(
        self,
        key: bytes,
        data: bytes,
        client_flag: int = 0,
        cas_token: Optional[int] = None,
    ) -> None:
        self.key = key
        self.data = data
        self.client_flag = client_flag
        self.cas_token = cas_token


@dataclass
class Values(MemcacheResponse):
    """
    Answer to a retrieval command: one Value per hit, in the order
    the server sent them. Misses are simply absent.
    """

    values: List[Value] = field(default_factory=list)


@dataclass
class Counter(MemcacheResponse):
    __slots__ = ("value",)
    value: int


@dataclass
class VersionReply(MemcacheResponse):
    __slots__ = ("version",)
    version: str


class ErrorKind(Enum):
    ERROR = b"ERROR"  # Unknown command
    CLIENT_ERROR = b"CLIENT_ERROR"  # Malformed request
    SERVER_ERROR = b"SERVER_ERROR"  # Server side failure


@dataclass
class ErrorReply(MemcacheResponse):
    __slots__ = ("kind", "message")
    kind: ErrorKind
    message: str


class DecodedFrame(NamedTuple):
    response: MemcacheResponse
    # Bytes consumed from the buffer
    size: int
    # Echoed correlation id, for protocols that carry one
    opaque: Optional[int] = None
