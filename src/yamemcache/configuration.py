import asyncio
import socket
from typing import Awaitable, Callable, NamedTuple, Optional

from yamemcache.base.base_frame_codec import BaseFrameCodec
from yamemcache.connection.driver import Connection
from yamemcache.connection.transport import StreamTransport
from yamemcache.framing.binary import BinaryFrameCodec
from yamemcache.framing.text import TextFrameCodec
from yamemcache.metrics.base import BaseMetricsCollector
from yamemcache.protocol import WireProtocol
from yamemcache.settings import (
    DEFAULT_CONNECTION_TIMEOUT_S,
    DEFAULT_MAX_HEADER_SIZE,
    DEFAULT_READ_BUFFER_SIZE,
)


class ServerAddress(NamedTuple):
    host: str
    port: int
    # Name used for the connection in logs, errors and metric
    # labels. Defaults to <host>:<port>
    server_id: Optional[str] = None

    def __str__(self) -> str:
        if self.server_id is not None:
            return self.server_id
        elif ":" in self.host:
            return f"[{self.host}]:{self.port}"
        else:
            return f"{self.host}:{self.port}"


def build_frame_codec(
    wire_protocol: WireProtocol = WireProtocol.TEXT,
    max_header_size: int = DEFAULT_MAX_HEADER_SIZE,
) -> BaseFrameCodec:
    if wire_protocol == WireProtocol.BINARY:
        return BinaryFrameCodec()
    return TextFrameCodec(max_header_size=max_header_size)


def transport_factory_builder(
    host: str,
    port: int,
    connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT_S,
    no_delay: bool = True,
) -> Callable[[], Awaitable[StreamTransport]]:
    """
    Helper to generate a transport_builder with desired settings

    The connection only needs something implementing the Transport
    protocol. This builds plain TCP ones, but you can create your own
    and add TLS, unix sockets, etc.
    """

    async def transport_builder() -> StreamTransport:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=connection_timeout
        )
        if no_delay and (sock := writer.get_extra_info("socket")) is not None:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return StreamTransport(reader, writer)

    return transport_builder


def connection_factory_builder(
    wire_protocol: WireProtocol = WireProtocol.TEXT,
    connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT_S,
    no_delay: bool = True,
    read_buffer_size: int = DEFAULT_READ_BUFFER_SIZE,
    max_header_size: int = DEFAULT_MAX_HEADER_SIZE,
    metrics_collector: Optional[BaseMetricsCollector] = None,
) -> Callable[[ServerAddress], Awaitable[Connection]]:
    """
    Helper to generate a connection_builder with desired settings

    Returns a coroutine function that connects to the given server
    and wraps the transport in a Connection.
    """

    async def connection_builder(server_address: ServerAddress) -> Connection:
        transport_builder = transport_factory_builder(
            host=server_address.host,
            port=server_address.port,
            connection_timeout=connection_timeout,
            no_delay=no_delay,
        )
        return Connection(
            transport=await transport_builder(),
            frame_codec=build_frame_codec(wire_protocol, max_header_size),
            name=str(server_address),
            read_buffer_size=read_buffer_size,
            metrics_collector=metrics_collector,
        )

    return connection_builder
