from typing import Dict, List, NamedTuple, Optional, Tuple

from yamemcache.base.base_frame_codec import BaseFrameCodec
from yamemcache.errors import (
    LengthMismatchError,
    ProtocolError,
    UnrecognizedReplyError,
)
from yamemcache.protocol import (
    ARITHMETIC_COMMANDS,
    ENDL,
    ENDL_LEN,
    MAX_CAS_TOKEN,
    MAX_CLIENT_FLAG,
    RETRIEVAL_COMMANDS,
    STORAGE_COMMANDS,
    Buffer,
    Command,
    Conflict,
    Counter,
    DecodedFrame,
    ErrorKind,
    ErrorReply,
    MemcacheResponse,
    Miss,
    NotStored,
    Request,
    Success,
    Value,
    Values,
    VersionReply,
)
from yamemcache.settings import DEFAULT_MAX_HEADER_SIZE

VALUE = b"VALUE"
END = b"END"
VERSION = b"VERSION"

NOT_STORED = NotStored()
MISS = Miss()
CONFLICT = Conflict()

_NO_ARG_REPLIES: Dict[bytes, MemcacheResponse] = {
    b"NOT_STORED": NOT_STORED,
    b"EXISTS": CONFLICT,
    b"NOT_FOUND": MISS,
}
_SUCCESS_REPLIES = frozenset({b"STORED", b"DELETED", b"TOUCHED"})
_ERROR_KINDS: Dict[bytes, ErrorKind] = {kind.value: kind for kind in ErrorKind}


class ValueHeader(NamedTuple):
    key: bytes
    client_flag: int
    size: int
    cas_token: Optional[int]


def _int(value: int) -> bytes:
    return str(value).encode("ascii")


class TextFrameCodec(BaseFrameCodec):
    """
    Classic memcached text protocol, as described in
    https://github.com/memcached/memcached/blob/master/doc/protocol.txt

    Responses are lines terminated in \\r\\n. Retrievals answer with
    zero or more value blocks, each a VALUE header line followed by
    exactly <bytes> bytes of data and \\r\\n, and a final END line.
    """

    def __init__(self, max_header_size: int = DEFAULT_MAX_HEADER_SIZE) -> None:
        self._max_header_size = max_header_size

    def _encode(self, request: Request) -> bytes:
        command = request.command
        if command in RETRIEVAL_COMMANDS:
            return b" ".join([command.value, *(k.key for k in request.keys)]) + ENDL
        elif command in STORAGE_COMMANDS:
            value = request.value or b""
            header = [
                command.value,
                request.key.key,
                _int(request.client_flag),
                _int(request.exptime),
                _int(len(value)),
            ]
            if command == Command.CAS:
                header.append(_int(request.cas_token or 0))
            return b" ".join(header) + ENDL + value + ENDL
        elif command == Command.DELETE:
            return b"delete " + request.key.key + ENDL
        elif command in ARITHMETIC_COMMANDS:
            return b" ".join(
                [command.value, request.key.key, _int(request.delta or 0)]
            ) + ENDL
        elif command == Command.TOUCH:
            return b"touch " + request.key.key + b" " + _int(request.exptime) + ENDL
        elif command == Command.VERSION:
            return b"version" + ENDL
        raise ValueError(f"Unsupported command: {command}")

    def _find_line_end(self, buffer: Buffer, start: int) -> int:
        end = buffer.find(ENDL, start)
        if end < 0 and len(buffer) - start > self._max_header_size:
            raise ProtocolError(
                f"Response header longer than {self._max_header_size} bytes"
            )
        return end

    def decode(self, buffer: Buffer, start: int = 0) -> Optional[DecodedFrame]:
        line_end = self._find_line_end(buffer, start)
        if line_end < 0:
            return None
        line = bytes(buffer[start:line_end])
        size = line_end + ENDL_LEN - start
        token, _, rest = line.partition(b" ")

        if token == VALUE or token == END:
            return self._decode_values(buffer, start, line)

        response: MemcacheResponse
        if line in _SUCCESS_REPLIES:
            response = Success()
        elif reply := _NO_ARG_REPLIES.get(line):
            response = reply
        elif (number := line.rstrip(b" ")).isdigit():
            # incr/decr answer with the new value
            response = Counter(int(number))
        elif token == VERSION:
            response = VersionReply(rest.decode("ascii", errors="replace"))
        elif kind := _ERROR_KINDS.get(token):
            response = ErrorReply(kind, rest.decode("utf-8", errors="replace"))
        else:
            raise UnrecognizedReplyError(line, consumed=size)
        return DecodedFrame(response, size)

    def _decode_values(
        self, buffer: Buffer, start: int, line: bytes
    ) -> Optional[DecodedFrame]:
        # Only headers and offsets until END shows up, the data is copied
        # once the whole response is in the buffer
        blocks: List[Tuple[ValueHeader, int]] = []
        pos = start + len(line) + ENDL_LEN
        token, _, rest = line.partition(b" ")
        while token == VALUE:
            header = self._parse_value_header(rest)
            data_end = pos + header.size
            if len(buffer) < data_end + ENDL_LEN:
                # Value not fully received yet
                return None
            if buffer[data_end : data_end + ENDL_LEN] != ENDL:
                raise LengthMismatchError(
                    header.size,
                    f"Error parsing value for {header.key!r}: expected "
                    f"{header.size} bytes terminated in \\r\\n",
                )
            blocks.append((header, pos))
            pos = data_end + ENDL_LEN

            line_end = self._find_line_end(buffer, pos)
            if line_end < 0:
                return None
            line = bytes(buffer[pos:line_end])
            pos = line_end + ENDL_LEN
            token, _, rest = line.partition(b" ")

        if line != END:
            raise ProtocolError(f"Unexpected line in retrieval response: {line!r}")
        values = [
            Value(
                key=header.key,
                data=bytes(buffer[data_start : data_start + header.size]),
                client_flag=header.client_flag,
                cas_token=header.cas_token,
            )
            for header, data_start in blocks
        ]
        return DecodedFrame(Values(values), pos - start)

    def _parse_value_header(self, header: bytes) -> ValueHeader:
        chunks = header.split()
        try:
            if len(chunks) == 3:
                key, client_flag, size = chunks
                cas_token = None
            elif len(chunks) == 4:
                key, client_flag, size, cas = chunks
                cas_token = int(cas)
            else:
                raise ValueError("Wrong number of fields")
            result = ValueHeader(key, int(client_flag), int(size), cas_token)
        except ValueError as e:
            raise ProtocolError(f"Malformed VALUE header: {header!r}") from e

        if (
            not 0 <= result.client_flag <= MAX_CLIENT_FLAG
            or result.size < 0
            or (cas_token is not None and not 0 <= cas_token <= MAX_CAS_TOKEN)
        ):
            raise ProtocolError(f"Out of range field in VALUE header: {header!r}")
        return result
