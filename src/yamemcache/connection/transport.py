import asyncio
import logging

_log: logging.Logger = logging.getLogger(__name__)


class StreamTransport:
    """
    Transport over an asyncio StreamReader / StreamWriter pair, as
    returned by asyncio.open_connection().
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._reader = reader
        self._writer = writer

    def __str__(self) -> str:
        return f"<StreamTransport {self._writer.get_extra_info('peername')}>"

    async def read(self, max_size: int) -> bytes:
        return await self._reader.read(max_size)

    def write(self, data: bytes) -> None:
        self._writer.write(data)

    async def drain(self) -> None:
        await self._writer.drain()

    async def close(self) -> None:
        if self._writer.is_closing():
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError):
            # Peer already gone, the socket is closed anyway
            _log.debug(f"Error waiting for {self} to close", exc_info=True)
