import asyncio
import itertools
import logging
from collections import deque
from enum import Enum
from typing import Deque, NamedTuple, Optional

from yamemcache.base.base_frame_codec import BaseFrameCodec
from yamemcache.errors import (
    BadQueryError,
    ConnectionLostError,
    MemcacheError,
    MemcacheServerError,
    OperationTimeoutError,
    ProtocolError,
    UnrecognizedReplyError,
)
from yamemcache.events.connection_closed_event import ConnectionClosedEvent
from yamemcache.framing.text import TextFrameCodec
from yamemcache.interfaces.transport import Transport
from yamemcache.metrics.base import BaseMetricsCollector, MetricDefinition
from yamemcache.protocol import (
    RETRIEVAL_COMMANDS,
    DecodedFrame,
    ErrorKind,
    ErrorReply,
    MemcacheResponse,
    Request,
    Values,
)
from yamemcache.settings import DEFAULT_READ_BUFFER_SIZE

_log: logging.Logger = logging.getLogger(__name__)

METRICS_NAMESPACE = "memcache_connection"


class ConnectionState(Enum):
    IDLE = "idle"  # Open, nothing in flight
    ACTIVE = "active"  # Open, requests waiting for responses
    CLOSED = "closed"  # Terminal


class ConnectionCounters(NamedTuple):
    # Requests written to the transport
    requests: int
    # Responses read and matched to their request
    responses: int
    # Requests currently waiting for a response
    in_flight: int
    # Requests whose caller stopped waiting (cancelled or timed out)
    # before the response arrived. Their responses get discarded.
    abandoned: int
    # Callers that hit the operation timeout
    timeouts: int
    # Requests resolved with an error
    errors: int


class PendingSlot:
    __slots__ = ("request", "future", "resolved", "abandoned")

    def __init__(
        self, request: Request, future: "asyncio.Future[MemcacheResponse]"
    ) -> None:
        self.request = request
        self.future = future
        self.resolved = False
        self.abandoned = False


class Connection:
    """
    A single connection to a memcached server, shared by any number
    of concurrent callers.

    Requests are pipelined: callers write their request as soon as
    they get the write lock and then wait for their own response, so
    many requests can be in flight at once. memcached answers in
    order, so a single reader task decodes the responses and hands
    each one to the oldest pending request.

    A caller that gives up (cancellation or timeout) can't take back
    bytes already sent, so its slot stays in the queue marked as
    abandoned and its response is discarded when it arrives.

    Any transport failure, or a protocol error we can't recover
    alignment from, closes the connection for good: every pending
    request fails with ConnectionLostError (the request that got the
    bad response gets the ProtocolError instead). There's no
    reconnection, create a new Connection for that.
    """

    def __init__(
        self,
        transport: Transport,
        frame_codec: Optional[BaseFrameCodec] = None,
        name: str = "",
        read_buffer_size: int = DEFAULT_READ_BUFFER_SIZE,
        metrics_collector: Optional[BaseMetricsCollector] = None,
    ) -> None:
        self.name: str = name or str(transport)
        self._transport = transport
        self._frame_codec: BaseFrameCodec = frame_codec or TextFrameCodec()
        self._read_buffer_size = read_buffer_size
        self._reset_buffer_size: int = read_buffer_size * 3 // 4
        self._buf = bytearray()
        self._pos = 0
        self._pending: Deque[PendingSlot] = deque()
        self._request_ids: "itertools.count[int]" = itertools.count(start=1)
        self._write_lock = asyncio.Lock()
        self._reader_task: Optional["asyncio.Task[None]"] = None
        self._closed = False
        self._requests = 0
        self._responses = 0
        self._abandoned = 0
        self._timeouts = 0
        self._errors = 0
        self.on_close = ConnectionClosedEvent()

        if metrics_collector:
            metrics_collector.init_metrics(
                namespace=METRICS_NAMESPACE,
                counters=[
                    MetricDefinition("requests", "Requests sent"),
                    MetricDefinition("responses", "Responses received"),
                    MetricDefinition(
                        "abandoned",
                        "Requests abandoned by their caller before the response",
                    ),
                    MetricDefinition("timeouts", "Requests that hit the timeout"),
                    MetricDefinition("errors", "Requests resolved with an error"),
                ],
                gauges=[
                    MetricDefinition("in_flight", "Requests waiting for a response"),
                ],
            )
        self._metrics = metrics_collector

    def __str__(self) -> str:
        return f"<Connection {self.name}>"

    @property
    def state(self) -> ConnectionState:
        if self._closed:
            return ConnectionState.CLOSED
        return ConnectionState.ACTIVE if self._pending else ConnectionState.IDLE

    def get_counters(self) -> ConnectionCounters:
        return ConnectionCounters(
            requests=self._requests,
            responses=self._responses,
            in_flight=len(self._pending),
            abandoned=self._abandoned,
            timeouts=self._timeouts,
            errors=self._errors,
        )

    async def submit(
        self,
        request: Request,
        timeout: Optional[float] = None,
    ) -> MemcacheResponse:
        """
        Sends the request and waits for its response.

        Error replies from the server are raised as MemcacheServerError
        (BadQueryError for CLIENT_ERROR). Logical outcomes like a miss
        or a cas conflict are returned as responses.

        The timeout covers the whole operation: waiting for the write
        lock, flushing the request and waiting for the response.
        """
        if self._closed:
            raise ConnectionLostError(self.name, f"Connection {self.name} is closed")
        request.request_id = next(self._request_ids)
        data = self._frame_codec.encode(request)

        try:
            return await asyncio.wait_for(self._send(request, data), timeout)
        except asyncio.TimeoutError:
            self._timeouts += 1
            self._metrics and self._metrics.counter_inc("timeouts", self.name)
            raise OperationTimeoutError(
                self.name,
                f"Timeout after {timeout}s waiting for "
                f"{request.command.name} on {self.name}",
            ) from None

    async def _send(self, request: Request, data: bytes) -> MemcacheResponse:
        async with self._write_lock:
            if self._closed:
                raise ConnectionLostError(
                    self.name, f"Connection {self.name} is closed"
                )
            self._start_reader()
            slot = PendingSlot(request, asyncio.get_running_loop().create_future())
            # No suspension point between queueing the slot and buffering
            # the bytes: the slot queue order is the wire order.
            self._pending.append(slot)
            self._requests += 1
            self._metrics and self._metrics.counter_inc("requests", self.name)
            self._update_in_flight()
            _log.debug(
                f"{self.name}: sending {request.command.name} "
                f"#{request.request_id}"
            )
            try:
                self._transport.write(data)
                await self._transport.drain()
            except asyncio.CancelledError:
                self._abandon(slot)
                raise
            except Exception as e:
                _log.warning(f"Error writing to {self.name}", exc_info=True)
                await self._abort(e)

        try:
            return await slot.future
        except asyncio.CancelledError:
            # Cancelled by the caller or by the operation timeout
            self._abandon(slot)
            raise

    def _abandon(self, slot: PendingSlot) -> None:
        if slot.resolved or slot.abandoned:
            return
        slot.abandoned = True
        if not slot.future.done():
            slot.future.cancel()
        self._abandoned += 1
        self._metrics and self._metrics.counter_inc("abandoned", self.name)
        _log.debug(
            f"{self.name}: {slot.request.command.name} "
            f"#{slot.request.request_id} abandoned by its caller"
        )

    def _update_in_flight(self) -> None:
        self._metrics and self._metrics.gauge_set(
            "in_flight", len(self._pending), self.name
        )

    def _start_reader(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.get_running_loop().create_task(
                self._read_loop()
            )

    async def _read_loop(self) -> None:
        try:
            while True:
                data = await self._transport.read(self._read_buffer_size)
                if not data:
                    raise ConnectionLostError(
                        self.name, f"Connection {self.name} closed by the server"
                    )
                self._buf += data
                self._process_buffer()
        except asyncio.CancelledError:
            self._shutdown(None)
            raise
        except ProtocolError as e:
            _log.warning(f"Protocol error on {self.name}, closing connection: {e}")
            self._shutdown(e, head_error=e)
        except Exception as e:
            _log.warning(f"Error reading from {self.name}, closing connection: {e}")
            self._shutdown(e)
        finally:
            await self._transport.close()

    def _process_buffer(self) -> None:
        while self._pos < len(self._buf):
            try:
                decoded = self._frame_codec.decode(self._buf, self._pos)
            except UnrecognizedReplyError as e:
                # The reply is framed, so we can skip it and stay aligned
                _log.warning(f"{self.name}: {e}")
                self._pos += e.consumed
                self._fail(self._pop_head(e.reply), e)
                continue
            if decoded is None:
                break
            self._pos += decoded.size
            self._dispatch(decoded)
        self._reset_buffer()

    def _reset_buffer(self) -> None:
        if self._pos == len(self._buf):
            self._buf.clear()
            self._pos = 0
        elif self._pos > self._reset_buffer_size:
            # Avoid moving memory until a good chunk of the buffer
            # has been consumed
            del self._buf[: self._pos]
            self._pos = 0

    def _pop_head(self, response: object) -> PendingSlot:
        if not self._pending:
            raise ProtocolError(
                f"Unexpected response with no request in flight: {response}"
            )
        slot = self._pending.popleft()
        self._responses += 1
        self._metrics and self._metrics.counter_inc("responses", self.name)
        self._update_in_flight()
        return slot

    def _dispatch(self, decoded: DecodedFrame) -> None:
        if self._pending:
            self._check_correlation(self._pending[0].request, decoded)
        slot = self._pop_head(decoded.response)
        response = decoded.response
        if isinstance(response, ErrorReply):
            _log.warning(
                f"{self.name}: {response.kind.name} {response.message} "
                f"for {slot.request.command.name}"
            )
            self._fail(slot, self._build_server_error(response, slot.request))
        elif slot.future.done():
            _log.debug(
                f"{self.name}: discarding response for abandoned "
                f"{slot.request.command.name} #{slot.request.request_id}"
            )
        else:
            slot.resolved = True
            slot.future.set_result(response)

    def _check_correlation(self, request: Request, decoded: DecodedFrame) -> None:
        """
        Responses are matched in order, verify they do belong to the
        request, as far as the response tells.
        """
        if decoded.opaque is not None and decoded.opaque != request.opaque:
            raise ProtocolError(
                f"Response opaque {decoded.opaque} does not match "
                f"request #{request.request_id} opaque {request.opaque}"
            )
        response = decoded.response
        if isinstance(response, ErrorReply):
            return
        is_retrieval = request.command in RETRIEVAL_COMMANDS
        if is_retrieval != isinstance(response, Values):
            raise ProtocolError(
                f"Unexpected response {response} for {request.command.name}"
            )
        if isinstance(response, Values):
            requested = {key.key for key in request.keys}
            for value in response.values:
                if value.key not in requested:
                    raise ProtocolError(
                        f"Unexpected key {value.key!r} in response for "
                        f"{request.command.name} #{request.request_id}"
                    )

    def _build_server_error(
        self, reply: ErrorReply, request: Request
    ) -> MemcacheServerError:
        message = (
            f"{reply.kind.name} {reply.message} "
            f"({request.command.name} on {self.name})"
        )
        if reply.kind == ErrorKind.CLIENT_ERROR:
            return BadQueryError(self.name, message)
        return MemcacheServerError(self.name, message)

    def _fail(self, slot: PendingSlot, error: MemcacheError) -> None:
        slot.resolved = True
        if slot.future.done():
            return
        slot.future.set_exception(error)
        self._errors += 1
        self._metrics and self._metrics.counter_inc("errors", self.name)

    def _shutdown(
        self,
        error: Optional[BaseException],
        head_error: Optional[MemcacheError] = None,
    ) -> None:
        if self._closed:
            return
        self._closed = True
        pending, self._pending = self._pending, deque()
        self._update_in_flight()
        if error is None:
            message = f"Connection {self.name} closed"
        else:
            message = f"Connection {self.name} lost: {error}"
        for slot in pending:
            slot_error: MemcacheError
            if head_error is not None:
                slot_error, head_error = head_error, None
            else:
                slot_error = ConnectionLostError(self.name, message)
                slot_error.__cause__ = error
            self._fail(slot, slot_error)
        try:
            self.on_close(self.name, error)
        except Exception:
            _log.exception(f"Error in on_close handler of {self.name}")

    async def _stop_reader(self) -> None:
        task, self._reader_task = self._reader_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _abort(self, error: BaseException) -> None:
        self._shutdown(error)
        await self._stop_reader()
        await self._transport.close()

    async def close(self) -> None:
        """
        Closes the connection, failing whatever is still in flight.
        Safe to call more than once.
        """
        self._shutdown(None)
        await self._stop_reader()
        await self._transport.close()
