import asyncio
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from yamemcache.connection.driver import Connection
from yamemcache.framing.binary import (
    DELTA_EXTRAS,
    HEADER,
    HEADER_SIZE,
    NO_AUTOVIVIFY,
    RESPONSE_MAGIC,
    STORE_EXTRAS,
    Opcode,
    Status,
)


class FakeMemcacheServer:
    """
    In-memory memcached speaking the text protocol, enough to
    exercise the client end to end.
    """

    VERSION = b"1.6.21"

    def __init__(self) -> None:
        # key -> (data, flags, cas)
        self.items: Dict[bytes, Tuple[bytes, int, int]] = {}
        self.commands: List[bytes] = []
        self._last_cas = 0
        self._buffer = bytearray()

    def _next_cas(self) -> int:
        self._last_cas += 1
        return self._last_cas

    def handle(self, data: bytes) -> bytes:
        self._buffer += data
        out = bytearray()
        while (end := self._buffer.find(b"\r\n")) >= 0:
            parts = bytes(self._buffer[:end]).split()
            command = parts[0] if parts else b""
            if command in (b"set", b"add", b"replace", b"append", b"prepend", b"cas"):
                size = int(parts[4])
                total = end + 2 + size + 2
                if len(self._buffer) < total:
                    break
                value = bytes(self._buffer[end + 2 : end + 2 + size])
                del self._buffer[:total]
                self.commands.append(command)
                out += self._store(command, parts, value)
            else:
                del self._buffer[: end + 2]
                self.commands.append(command)
                out += self._command(command, parts[1:])
        return bytes(out)

    def _store(self, command: bytes, parts: List[bytes], value: bytes) -> bytes:
        key, flags = parts[1], int(parts[2])
        item = self.items.get(key)
        if command == b"add" and item:
            return b"NOT_STORED\r\n"
        if command in (b"replace", b"append", b"prepend") and not item:
            return b"NOT_STORED\r\n"
        if command == b"cas":
            if not item:
                return b"NOT_FOUND\r\n"
            if item[2] != int(parts[5]):
                return b"EXISTS\r\n"
        if item and command == b"append":
            value, flags = item[0] + value, item[1]
        elif item and command == b"prepend":
            value, flags = value + item[0], item[1]
        self.items[key] = (value, flags, self._next_cas())
        return b"STORED\r\n"

    def _command(self, command: bytes, args: List[bytes]) -> bytes:  # noqa: C901
        if command in (b"get", b"gets"):
            out = bytearray()
            for key in args:
                if (item := self.items.get(key)) is None:
                    continue
                data, flags, cas = item
                header = b"VALUE %b %d %d" % (key, flags, len(data))
                if command == b"gets":
                    header += b" %d" % cas
                out += header + b"\r\n" + data + b"\r\n"
            return bytes(out) + b"END\r\n"
        elif command == b"delete":
            if self.items.pop(args[0], None) is None:
                return b"NOT_FOUND\r\n"
            return b"DELETED\r\n"
        elif command in (b"incr", b"decr"):
            if (item := self.items.get(args[0])) is None:
                return b"NOT_FOUND\r\n"
            if not item[0].isdigit():
                return (
                    b"CLIENT_ERROR cannot increment or decrement "
                    b"non-numeric value\r\n"
                )
            if command == b"incr":
                number = (int(item[0]) + int(args[1])) % 2**64
            else:
                number = max(0, int(item[0]) - int(args[1]))
            self.items[args[0]] = (b"%d" % number, item[1], self._next_cas())
            return b"%d\r\n" % number
        elif command == b"touch":
            return b"TOUCHED\r\n" if args[0] in self.items else b"NOT_FOUND\r\n"
        elif command == b"version":
            return b"VERSION " + self.VERSION + b"\r\n"
        return b"ERROR\r\n"


class FakeBinaryMemcacheServer:
    """
    Binary protocol front end over the items of a FakeMemcacheServer.
    """

    def __init__(self, store: FakeMemcacheServer) -> None:
        self.store = store
        self._buffer = bytearray()

    def handle(self, data: bytes) -> bytes:
        self._buffer += data
        out = bytearray()
        while len(self._buffer) >= HEADER_SIZE:
            (_, opcode, key_length, extras_length, _, _, body_length, opaque, cas) = (
                HEADER.unpack_from(self._buffer)
            )
            total = HEADER_SIZE + body_length
            if len(self._buffer) < total:
                break
            body = bytes(self._buffer[HEADER_SIZE:total])
            del self._buffer[:total]
            extras = body[:extras_length]
            key = body[extras_length : extras_length + key_length]
            value = body[extras_length + key_length :]
            self.store.commands.append(Opcode(opcode).name.encode())
            out += self._command(Opcode(opcode), opaque, cas, extras, key, value)
        return bytes(out)

    def _packet(
        self,
        opcode: int,
        opaque: int,
        status: int = Status.NO_ERROR,
        key: bytes = b"",
        extras: bytes = b"",
        value: bytes = b"",
        cas: int = 0,
    ) -> bytes:
        header = HEADER.pack(
            RESPONSE_MAGIC,
            opcode,
            len(key),
            len(extras),
            0,
            status,
            len(extras) + len(key) + len(value),
            opaque,
            cas,
        )
        return header + extras + key + value

    def _command(  # noqa: C901
        self,
        opcode: Opcode,
        opaque: int,
        cas: int,
        extras: bytes,
        key: bytes,
        value: bytes,
    ) -> bytes:
        items = self.store.items
        item = items.get(key)
        if opcode == Opcode.GETKQ:
            if item is None:
                return b""
            return self._packet(
                opcode,
                opaque,
                key=key,
                extras=item[1].to_bytes(4, "big"),
                value=item[0],
                cas=item[2],
            )
        elif opcode in (Opcode.NOOP, Opcode.VERSION):
            version = FakeMemcacheServer.VERSION if opcode == Opcode.VERSION else b""
            return self._packet(opcode, opaque, value=version)
        elif opcode in (Opcode.SET, Opcode.ADD, Opcode.REPLACE):
            flags, _ = STORE_EXTRAS.unpack(extras)
            if opcode == Opcode.ADD and item:
                return self._packet(opcode, opaque, status=Status.KEY_EXISTS)
            if opcode == Opcode.REPLACE and not item:
                return self._packet(opcode, opaque, status=Status.KEY_NOT_FOUND)
            if cas and not item:
                return self._packet(opcode, opaque, status=Status.KEY_NOT_FOUND)
            if cas and item and item[2] != cas:
                return self._packet(opcode, opaque, status=Status.KEY_EXISTS)
            new_cas = self.store._next_cas()
            items[key] = (value, flags, new_cas)
            return self._packet(opcode, opaque, cas=new_cas)
        elif opcode in (Opcode.APPEND, Opcode.PREPEND):
            if not item:
                return self._packet(opcode, opaque, status=Status.ITEM_NOT_STORED)
            data = item[0] + value if opcode == Opcode.APPEND else value + item[0]
            new_cas = self.store._next_cas()
            items[key] = (data, item[1], new_cas)
            return self._packet(opcode, opaque, cas=new_cas)
        elif opcode == Opcode.DELETE:
            if items.pop(key, None) is None:
                return self._packet(opcode, opaque, status=Status.KEY_NOT_FOUND)
            return self._packet(opcode, opaque)
        elif opcode in (Opcode.INCREMENT, Opcode.DECREMENT):
            delta, _, exptime = DELTA_EXTRAS.unpack(extras)
            if not item:
                assert exptime == NO_AUTOVIVIFY
                return self._packet(opcode, opaque, status=Status.KEY_NOT_FOUND)
            if not item[0].isdigit():
                return self._packet(
                    opcode,
                    opaque,
                    status=Status.NON_NUMERIC_VALUE,
                    value=b"Non-numeric server-side value for incr or decr",
                )
            if opcode == Opcode.INCREMENT:
                number = (int(item[0]) + delta) % 2**64
            else:
                number = max(0, int(item[0]) - delta)
            new_cas = self.store._next_cas()
            items[key] = (b"%d" % number, item[1], new_cas)
            return self._packet(opcode, opaque, value=number.to_bytes(8, "big"))
        elif opcode == Opcode.TOUCH:
            status = Status.NO_ERROR if item else Status.KEY_NOT_FOUND
            return self._packet(opcode, opaque, status=status)
        return self._packet(opcode, opaque, status=Status.UNKNOWN_COMMAND)


class FakeTransport:
    """
    In-memory Transport. Bytes written go to the server callback (if
    any) and its answer is queued for reading. Tests can also feed
    bytes directly and choose how many bytes each read returns.
    """

    def __init__(
        self,
        server: Optional[Callable[[bytes], bytes]] = None,
        chunk_size: Optional[int] = None,
    ) -> None:
        self.server = server
        self.chunk_size = chunk_size
        self.written = bytearray()
        self.closed = False
        self.hold_responses = False
        self._held = bytearray()
        self._incoming = bytearray()
        self._eof = False
        self._error: Optional[BaseException] = None
        self._data_ready = asyncio.Event()

    def __str__(self) -> str:
        return "fake:11211"

    def feed(self, data: bytes) -> None:
        self._incoming += data
        self._data_ready.set()

    def feed_eof(self) -> None:
        self._eof = True
        self._data_ready.set()

    def fail(self, error: BaseException) -> None:
        self._error = error
        self._data_ready.set()

    def release(self) -> None:
        """
        Delivers the responses held while hold_responses was set.
        """
        self.hold_responses = False
        held, self._held = bytes(self._held), bytearray()
        self.feed(held)

    async def read(self, max_size: int) -> bytes:
        while not self._incoming and not self._eof and self._error is None:
            self._data_ready.clear()
            await self._data_ready.wait()
        if self._error is not None:
            raise self._error
        if not self._incoming:
            return b""
        size = min(max_size, self.chunk_size or max_size)
        data = bytes(self._incoming[:size])
        del self._incoming[:size]
        return data

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("Transport closed")
        self.written += data
        if self.server is not None:
            response = self.server(data)
            if self.hold_responses:
                self._held += response
            else:
                self.feed(response)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    async def close(self) -> None:
        self.closed = True
        self.feed_eof()


@pytest.fixture
def fake_server() -> FakeMemcacheServer:
    return FakeMemcacheServer()


@pytest.fixture
def transport_factory(
    fake_server: FakeMemcacheServer,
) -> Callable[..., FakeTransport]:
    def factory(
        with_server: bool = True, chunk_size: Optional[int] = None
    ) -> FakeTransport:
        return FakeTransport(
            server=fake_server.handle if with_server else None,
            chunk_size=chunk_size,
        )

    return factory


@pytest.fixture
def transport(transport_factory: Callable[..., FakeTransport]) -> FakeTransport:
    return transport_factory()


@pytest_asyncio.fixture
async def connection(transport: FakeTransport) -> AsyncIterator[Connection]:
    connection = Connection(transport, name="fake:11211")
    yield connection
    await connection.close()


@pytest.fixture
def binary_server(fake_server: FakeMemcacheServer) -> FakeBinaryMemcacheServer:
    return FakeBinaryMemcacheServer(fake_server)
