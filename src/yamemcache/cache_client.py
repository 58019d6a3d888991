import logging
from dataclasses import dataclass
from enum import Enum
from types import TracebackType
from typing import Any, Dict, Generic, Iterable, Optional, Type, TypeVar

from yamemcache.base.base_value_codec import BaseValueCodec
from yamemcache.configuration import ServerAddress, connection_factory_builder
from yamemcache.connection.driver import Connection
from yamemcache.errors import DecodeError, MemcacheError
from yamemcache.metrics.base import BaseMetricsCollector
from yamemcache.protocol import (
    AnyKey,
    Command,
    Conflict,
    Counter,
    Key,
    MemcacheResponse,
    Miss,
    NotStored,
    Request,
    Success,
    Value,
    Values,
    VersionReply,
    WireProtocol,
    as_key,
)
from yamemcache.settings import (
    DEFAULT_CONNECTION_TIMEOUT_S,
    DEFAULT_OPERATION_TIMEOUT_S,
)
from yamemcache.value_codecs import BytesCodec

_log: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Item(Generic[T]):
    """
    A value read from memcached, with the metadata stored alongside.

    exptime is always None on items returned by get and get_many:
    neither the text nor the binary retrieval replies carry it. The
    field is there for callers building items themselves.
    """

    key: Key
    value: T
    flags: int
    cas_token: Optional[int] = None
    exptime: Optional[int] = None


class CasOutcome(Enum):
    STORED = "stored"
    CONFLICT = "conflict"  # Someone updated the item since our read
    NOT_FOUND = "not_found"  # The item is gone


class CacheClient(Generic[T]):
    """
    Typed operations over a single Connection.

    Values go through the value codec, which gets the stored flags
    back on reads so it can tell how a value was encoded.

    Misses, cas conflicts and deletes of absent keys are return
    values. Server error replies, protocol errors, connection loss and
    timeouts are raised (see yamemcache.errors).
    """

    def __init__(
        self,
        connection: Connection,
        value_codec: BaseValueCodec[T],
        timeout: Optional[float] = DEFAULT_OPERATION_TIMEOUT_S,
    ) -> None:
        self._connection = connection
        self._value_codec = value_codec
        self._timeout = timeout

    @staticmethod
    async def cache_client_from_server(
        server_address: ServerAddress,
        value_codec: Optional[BaseValueCodec[Any]] = None,
        wire_protocol: WireProtocol = WireProtocol.TEXT,
        connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT_S,
        timeout: Optional[float] = DEFAULT_OPERATION_TIMEOUT_S,
        metrics_collector: Optional[BaseMetricsCollector] = None,
    ) -> "CacheClient[Any]":
        connection_builder = connection_factory_builder(
            wire_protocol=wire_protocol,
            connection_timeout=connection_timeout,
            metrics_collector=metrics_collector,
        )
        return CacheClient(
            connection=await connection_builder(server_address),
            value_codec=value_codec or BytesCodec(),
            timeout=timeout,
        )

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def value_codec(self) -> BaseValueCodec[T]:
        return self._value_codec

    async def __aenter__(self) -> "CacheClient[T]":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        await self._connection.close()

    async def _execute(self, request: Request) -> MemcacheResponse:
        _log.debug(
            f"{self._connection.name}: {request.command.name} "
            f"{' '.join(str(k) for k in request.keys)}"
        )
        return await self._connection.submit(request, timeout=self._timeout)

    def _unexpected(
        self, command: Command, result: MemcacheResponse
    ) -> MemcacheError:
        return MemcacheError(
            f"Unexpected response for {command.name} command: {result}"
        )

    def _build_item(self, key: Key, value: Value) -> Item[T]:
        try:
            decoded = self._value_codec.decode(value.data, value.client_flag)
        except Exception as e:
            _log.warning(
                f"Error decoding value for {key} with flags {value.client_flag}: {e}"
            )
            raise DecodeError(
                f"Error decoding value for {key} with flags {value.client_flag}",
                key=key.key,
                flags=value.client_flag,
            ) from e
        return Item(
            key=key,
            value=decoded,
            flags=value.client_flag,
            cas_token=value.cas_token,
        )

    async def get(
        self,
        key: AnyKey,
        return_cas_token: bool = False,
    ) -> Optional[Item[T]]:
        """
        Returns None on a miss. With return_cas_token the item carries
        the token needed for a later cas().
        """
        key = as_key(key)
        command = Command.GETS if return_cas_token else Command.GET
        result = await self._execute(Request(command, keys=(key,)))
        if not isinstance(result, Values):
            raise self._unexpected(command, result)
        for value in result.values:
            if value.key == key.key:
                return self._build_item(key, value)
        return None

    async def get_many(
        self,
        keys: Iterable[AnyKey],
        return_cas_token: bool = False,
    ) -> Dict[Key, Item[T]]:
        """
        Fetches several keys in one round trip. Only hits are present
        in the result.
        """
        requested = {k.key: k for k in (as_key(key) for key in keys)}
        if not requested:
            return {}
        command = Command.GETS if return_cas_token else Command.GET
        result = await self._execute(
            Request(command, keys=tuple(requested.values()))
        )
        if not isinstance(result, Values):
            raise self._unexpected(command, result)
        items: Dict[Key, Item[T]] = {}
        for value in result.values:
            key = requested[value.key]
            items[key] = self._build_item(key, value)
        return items

    async def _store(
        self,
        command: Command,
        key: AnyKey,
        value: T,
        exptime: int = 0,
        flags: Optional[int] = None,
        cas_token: Optional[int] = None,
    ) -> MemcacheResponse:
        encoded = self._value_codec.encode(value)
        return await self._execute(
            Request(
                command,
                keys=(as_key(key),),
                value=encoded.data,
                client_flag=encoded.flags if flags is None else flags,
                exptime=exptime,
                cas_token=cas_token,
            )
        )

    async def set(
        self,
        key: AnyKey,
        value: T,
        exptime: int = 0,
        flags: Optional[int] = None,
    ) -> None:
        """
        Stores the value unconditionally. `flags`, when given, is
        stored instead of the flags the codec picked.
        """
        result = await self._store(Command.SET, key, value, exptime, flags)
        if not isinstance(result, Success):
            raise self._unexpected(Command.SET, result)

    async def _conditional_store(
        self,
        command: Command,
        key: AnyKey,
        value: T,
        exptime: int = 0,
        flags: Optional[int] = None,
    ) -> bool:
        result = await self._store(command, key, value, exptime, flags)
        if isinstance(result, Success):
            return True
        elif isinstance(result, (NotStored, Miss, Conflict)):
            # The binary protocol reports a failed add as a conflict and
            # a failed replace as a miss
            return False
        raise self._unexpected(command, result)

    async def add(
        self,
        key: AnyKey,
        value: T,
        exptime: int = 0,
        flags: Optional[int] = None,
    ) -> bool:
        """
        Stores only if the key is not present.
        """
        return await self._conditional_store(Command.ADD, key, value, exptime, flags)

    async def replace(
        self,
        key: AnyKey,
        value: T,
        exptime: int = 0,
        flags: Optional[int] = None,
    ) -> bool:
        """
        Stores only if the key is present.
        """
        return await self._conditional_store(
            Command.REPLACE, key, value, exptime, flags
        )

    async def append(self, key: AnyKey, value: T) -> bool:
        """
        Appends the encoded value to the stored bytes. The stored
        flags and exptime are left untouched, so this only makes sense
        with codecs whose encoding can be concatenated (like BytesCodec).
        """
        return await self._conditional_store(Command.APPEND, key, value)

    async def prepend(self, key: AnyKey, value: T) -> bool:
        return await self._conditional_store(Command.PREPEND, key, value)

    async def cas(
        self,
        key: AnyKey,
        value: T,
        cas_token: int,
        exptime: int = 0,
        flags: Optional[int] = None,
    ) -> CasOutcome:
        """
        Stores the value only if the item is unchanged since the read
        that returned `cas_token`.
        """
        result = await self._store(
            Command.CAS, key, value, exptime, flags, cas_token=cas_token
        )
        if isinstance(result, Success):
            return CasOutcome.STORED
        elif isinstance(result, Conflict):
            return CasOutcome.CONFLICT
        elif isinstance(result, Miss):
            return CasOutcome.NOT_FOUND
        raise self._unexpected(Command.CAS, result)

    async def delete(self, key: AnyKey) -> bool:
        """
        Returns True if the key existed and it was deleted.
        """
        result = await self._execute(Request(Command.DELETE, keys=(as_key(key),)))
        if isinstance(result, Success):
            return True
        elif isinstance(result, Miss):
            return False
        raise self._unexpected(Command.DELETE, result)

    async def _delta(
        self, command: Command, key: AnyKey, delta: int
    ) -> Optional[int]:
        result = await self._execute(
            Request(command, keys=(as_key(key),), delta=delta)
        )
        if isinstance(result, Counter):
            return result.value
        elif isinstance(result, Miss):
            return None
        raise self._unexpected(command, result)

    async def incr(self, key: AnyKey, delta: int = 1) -> Optional[int]:
        """
        Returns the new value, or None if the key is not present.
        The stored value must be the decimal representation of an
        unsigned 64 bit integer, the counter wraps around on overflow.
        """
        return await self._delta(Command.INCR, key, delta)

    async def decr(self, key: AnyKey, delta: int = 1) -> Optional[int]:
        """
        Returns the new value, or None if the key is not present.
        Decrementing below 0 yields 0.
        """
        return await self._delta(Command.DECR, key, delta)

    async def touch(self, key: AnyKey, exptime: int) -> bool:
        result = await self._execute(
            Request(Command.TOUCH, keys=(as_key(key),), exptime=exptime)
        )
        if isinstance(result, Success):
            return True
        elif isinstance(result, Miss):
            return False
        raise self._unexpected(Command.TOUCH, result)

    async def version(self) -> str:
        result = await self._execute(Request(Command.VERSION))
        if isinstance(result, VersionReply):
            return result.version
        raise self._unexpected(Command.VERSION, result)
