from typing import Optional


class MemcacheError(Exception):
    pass


class BadKeyError(MemcacheError, ValueError):
    pass


class MemcacheServerError(MemcacheError):
    """
    The server answered with an error reply (ERROR, SERVER_ERROR or
    the binary protocol equivalents).
    """

    def __init__(self, server: str, message: str) -> None:
        self.server = server
        super().__init__(message)


class BadQueryError(MemcacheServerError):
    """
    The server rejected the request as malformed (CLIENT_ERROR).
    """


class ProtocolError(MemcacheError):
    """
    Malformed or unexpected data on the wire.
    """


class LengthMismatchError(ProtocolError):
    def __init__(self, expected: int, message: str) -> None:
        self.expected = expected
        super().__init__(message)


class UnrecognizedReplyError(ProtocolError):
    """
    The reply could be framed but it is not one we know about.

    `consumed` holds the number of bytes the reply spans so the
    reader can skip it and keep the stream aligned.
    """

    def __init__(self, reply: bytes, consumed: int) -> None:
        self.reply = reply
        self.consumed = consumed
        super().__init__(f"Unrecognized reply: {reply!r}")


class ClientError(MemcacheError):
    def __init__(self, server: str, message: str) -> None:
        self.server = server
        super().__init__(message)


class ConnectionLostError(ClientError):
    pass


class OperationTimeoutError(ClientError):
    pass


class DecodeError(MemcacheError):
    """
    The value codec could not rebuild a value from the stored bytes
    and flags.
    """

    def __init__(
        self,
        message: str,
        key: Optional[bytes] = None,
        flags: Optional[int] = None,
    ) -> None:
        self.key = key
        self.flags = flags
        super().__init__(message)
