import struct
from enum import IntEnum
from typing import List, NamedTuple, Optional, Tuple

from yamemcache.base.base_frame_codec import BaseFrameCodec
from yamemcache.errors import (
    LengthMismatchError,
    ProtocolError,
    UnrecognizedReplyError,
)
from yamemcache.protocol import (
    RETRIEVAL_COMMANDS,
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

# magic, opcode, key length, extras length, data type,
# vbucket (request) / status (response), body length, opaque, cas
HEADER = struct.Struct(">BBHBBHIIQ")
HEADER_SIZE = HEADER.size
REQUEST_MAGIC = 0x80
RESPONSE_MAGIC = 0x81

# flags, exptime
STORE_EXTRAS = struct.Struct(">II")
# delta, initial value, exptime
DELTA_EXTRAS = struct.Struct(">QQI")
# exptime
TOUCH_EXTRAS = struct.Struct(">I")
# flags
GET_EXTRAS = struct.Struct(">I")
COUNTER_VALUE = struct.Struct(">Q")

# Delta exptime meaning "fail on missing key instead of creating it"
NO_AUTOVIVIFY = 0xFFFFFFFF
MAX_EXPTIME = 0xFFFFFFFF


class Opcode(IntEnum):
    GET = 0x00
    SET = 0x01
    ADD = 0x02
    REPLACE = 0x03
    DELETE = 0x04
    INCREMENT = 0x05
    DECREMENT = 0x06
    NOOP = 0x0A
    VERSION = 0x0B
    GETK = 0x0C
    GETKQ = 0x0D
    APPEND = 0x0E
    PREPEND = 0x0F
    TOUCH = 0x1C


class Status(IntEnum):
    NO_ERROR = 0x00
    KEY_NOT_FOUND = 0x01
    KEY_EXISTS = 0x02
    VALUE_TOO_LARGE = 0x03
    INVALID_ARGUMENTS = 0x04
    ITEM_NOT_STORED = 0x05
    NON_NUMERIC_VALUE = 0x06
    UNKNOWN_COMMAND = 0x81
    OUT_OF_MEMORY = 0x82


_STORAGE_OPCODES = {
    Command.SET: Opcode.SET,
    Command.ADD: Opcode.ADD,
    Command.REPLACE: Opcode.REPLACE,
    Command.CAS: Opcode.SET,  # A set carrying a cas in the header
}
_CONCAT_OPCODES = {
    Command.APPEND: Opcode.APPEND,
    Command.PREPEND: Opcode.PREPEND,
}
_WRITE_OPCODES = frozenset(
    {
        Opcode.SET,
        Opcode.ADD,
        Opcode.REPLACE,
        Opcode.APPEND,
        Opcode.PREPEND,
        Opcode.DELETE,
        Opcode.TOUCH,
    }
)
_RETRIEVAL_OPCODES = frozenset({Opcode.GET, Opcode.GETK, Opcode.GETKQ})
_CLIENT_ERROR_STATUSES = frozenset(
    {Status.VALUE_TOO_LARGE, Status.INVALID_ARGUMENTS, Status.NON_NUMERIC_VALUE}
)


class PacketHeader(NamedTuple):
    opcode: int
    key_length: int
    extras_length: int
    status: int
    body_length: int
    opaque: int
    cas: int

    @property
    def size(self) -> int:
        return HEADER_SIZE + self.body_length


class Packet(NamedTuple):
    opcode: int
    status: int
    opaque: int
    cas: int
    extras: bytes
    key: bytes
    value: bytes


def build_packet(
    opcode: Opcode,
    opaque: int,
    key: bytes = b"",
    extras: bytes = b"",
    value: bytes = b"",
    cas: int = 0,
) -> bytes:
    header = HEADER.pack(
        REQUEST_MAGIC,
        opcode,
        len(key),
        len(extras),
        0,
        0,
        len(extras) + len(key) + len(value),
        opaque,
        cas,
    )
    return header + extras + key + value


def _check_exptime(exptime: int) -> int:
    if not 0 <= exptime <= MAX_EXPTIME:
        raise ValueError(f"Binary protocol exptime out of range: {exptime}")
    return exptime


class BinaryFrameCodec(BaseFrameCodec):
    """
    memcached binary protocol.

    Every packet echoes the request opaque, which we set to the
    request id, so the connection can verify the correlation.

    Retrievals are sent as one quiet GETKQ per key plus a NOOP: the
    server only answers hits, and the NOOP answer marks the end of
    the response, mirroring VALUE* END in the text protocol.
    """

    def _encode(self, request: Request) -> bytes:  # noqa: C901
        command = request.command
        opaque = request.opaque
        if command in RETRIEVAL_COMMANDS:
            return (
                b"".join(
                    build_packet(Opcode.GETKQ, opaque, key=key.key)
                    for key in request.keys
                )
                + build_packet(Opcode.NOOP, opaque)
            )
        elif opcode := _STORAGE_OPCODES.get(command):
            return build_packet(
                opcode,
                opaque,
                key=request.key.key,
                extras=STORE_EXTRAS.pack(
                    request.client_flag, _check_exptime(request.exptime)
                ),
                value=request.value or b"",
                cas=request.cas_token or 0,
            )
        elif opcode := _CONCAT_OPCODES.get(command):
            return build_packet(
                opcode, opaque, key=request.key.key, value=request.value or b""
            )
        elif command == Command.DELETE:
            return build_packet(Opcode.DELETE, opaque, key=request.key.key)
        elif command in (Command.INCR, Command.DECR):
            return build_packet(
                Opcode.INCREMENT if command == Command.INCR else Opcode.DECREMENT,
                opaque,
                key=request.key.key,
                extras=DELTA_EXTRAS.pack(request.delta or 0, 0, NO_AUTOVIVIFY),
            )
        elif command == Command.TOUCH:
            return build_packet(
                Opcode.TOUCH,
                opaque,
                key=request.key.key,
                extras=TOUCH_EXTRAS.pack(_check_exptime(request.exptime)),
            )
        elif command == Command.VERSION:
            return build_packet(Opcode.VERSION, opaque)
        raise ValueError(f"Unsupported command: {command}")

    def _read_header(self, buffer: Buffer, pos: int) -> Optional[PacketHeader]:
        """
        Returns the header of the packet at pos, or None until the
        whole packet, body included, is in the buffer.
        """
        if len(buffer) - pos < HEADER_SIZE:
            return None
        (
            magic,
            opcode,
            key_length,
            extras_length,
            _data_type,
            status,
            body_length,
            opaque,
            cas,
        ) = HEADER.unpack_from(buffer, pos)
        if magic != RESPONSE_MAGIC:
            raise ProtocolError(f"Wrong magic byte: {magic:#x}")
        if key_length + extras_length > body_length:
            raise LengthMismatchError(
                body_length,
                f"Packet body of {body_length} bytes can't hold "
                f"{extras_length} bytes of extras and {key_length} of key",
            )
        header = PacketHeader(
            opcode, key_length, extras_length, status, body_length, opaque, cas
        )
        if len(buffer) < pos + header.size:
            return None
        return header

    def _read_packet(self, buffer: Buffer, pos: int, header: PacketHeader) -> Packet:
        body = bytes(buffer[pos + HEADER_SIZE : pos + header.size])
        key_end = header.extras_length + header.key_length
        return Packet(
            opcode=header.opcode,
            status=header.status,
            opaque=header.opaque,
            cas=header.cas,
            extras=body[: header.extras_length],
            key=body[header.extras_length : key_end],
            value=body[key_end:],
        )

    def decode(self, buffer: Buffer, start: int = 0) -> Optional[DecodedFrame]:
        # Retrieval packets are only located until the closing NOOP
        # arrives, their bodies are copied once the frame is complete
        hits: List[Tuple[int, PacketHeader]] = []
        pos = start
        while (header := self._read_header(buffer, pos)) is not None:
            if hits and header.opaque != hits[0][1].opaque:
                raise ProtocolError(
                    f"Opaque changed mid retrieval: {hits[0][1].opaque} "
                    f"-> {header.opaque}"
                )
            if header.opcode in _RETRIEVAL_OPCODES:
                if header.status != Status.NO_ERROR:
                    raise ProtocolError(
                        f"Unexpected status {header.status:#x} for quiet get"
                    )
                hits.append((pos, header))
                pos += header.size
            elif header.opcode == Opcode.NOOP:
                values = [
                    self._build_value(self._read_packet(buffer, hit_pos, hit))
                    for hit_pos, hit in hits
                ]
                pos += header.size
                return DecodedFrame(Values(values), pos - start, header.opaque)
            elif hits:
                raise ProtocolError(
                    f"Unexpected opcode {header.opcode:#x} in retrieval response"
                )
            else:
                packet = self._read_packet(buffer, pos, header)
                pos += header.size
                response = self._build_response(packet)
                if response is None:
                    raise UnrecognizedReplyError(
                        bytes(buffer[start:pos]), consumed=header.size
                    )
                return DecodedFrame(response, pos - start, header.opaque)
        return None

    def _build_value(self, packet: Packet) -> Value:
        if len(packet.extras) == GET_EXTRAS.size:
            (client_flag,) = GET_EXTRAS.unpack(packet.extras)
        elif not packet.extras:
            client_flag = 0
        else:
            raise ProtocolError(f"Unexpected get extras: {packet.extras!r}")
        return Value(
            key=packet.key,
            data=packet.value,
            client_flag=client_flag,
            cas_token=packet.cas or None,
        )

    def _build_response(self, packet: Packet) -> Optional[MemcacheResponse]:
        status = packet.status
        message = packet.value.decode("utf-8", errors="replace")
        if status == Status.NO_ERROR:
            if packet.opcode in (Opcode.INCREMENT, Opcode.DECREMENT):
                if len(packet.value) != COUNTER_VALUE.size:
                    raise LengthMismatchError(
                        COUNTER_VALUE.size,
                        f"Counter value should be {COUNTER_VALUE.size} bytes, "
                        f"got {len(packet.value)}",
                    )
                return Counter(COUNTER_VALUE.unpack(packet.value)[0])
            elif packet.opcode == Opcode.VERSION:
                return VersionReply(message)
            elif packet.opcode in _WRITE_OPCODES:
                return Success(cas_token=packet.cas or None)
        elif status == Status.KEY_NOT_FOUND:
            return Miss()
        elif status == Status.KEY_EXISTS:
            return Conflict()
        elif status == Status.ITEM_NOT_STORED:
            return NotStored()
        elif status in _CLIENT_ERROR_STATUSES:
            return ErrorReply(ErrorKind.CLIENT_ERROR, message)
        elif status == Status.UNKNOWN_COMMAND:
            return ErrorReply(ErrorKind.ERROR, message)
        elif status == Status.OUT_OF_MEMORY:
            return ErrorReply(ErrorKind.SERVER_ERROR, message)
        return None
