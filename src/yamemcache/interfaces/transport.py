from typing import Protocol


class Transport(Protocol):
    """
    Ordered, bidirectional byte stream to a memcached server.

    Opening it (TCP, unix socket, TLS...) is up to the caller, the
    connection only reads, writes and closes it.
    """

    async def read(self, max_size: int) -> bytes:
        """
        Returns up to max_size bytes. An empty result means the
        stream reached its end.
        """
        ...  # pragma: no cover

    def write(self, data: bytes) -> None:
        """
        Buffers data to be sent, in order. Must not suspend.
        """
        ...  # pragma: no cover

    async def drain(self) -> None:
        """
        Waits until the write buffer is flushed enough to accept more.
        """
        ...  # pragma: no cover

    async def close(self) -> None:
        """
        Closes the stream. Calling it more than once is allowed.
        """
        ...  # pragma: no cover
