"""Bus connections.

A :class:`Connection` owns the state every call made through it shares:

* A :class:`SerialSource` handing out request serials.
* The pending-call table (:attr:`Connection.calls`), which maps the serial of every
  call awaiting a reply to its :class:`buscall.call.Call` record. The table is guarded
  by :attr:`Connection.calls_lock`, which is never held across an ``await``.
* The outbound queue (:attr:`Connection.outbound`). Submitting a message waits when the
  queue is full.

When the connection has a :class:`buscall.transport.Node`, entering the connection's
async context starts two workers: one drains the outbound queue onto the node, the other
receives replies and resolves them against the pending-call table. Leaving the context
resolves every call still pending with :class:`ConnectionClosedError`.
"""

import asyncio
import contextlib
import threading
import types
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NoReturn, Optional

import cbor2

from .call import BusObject
from .exception import (
    BusBaseException,
    BusError,
    ConnectionClosedError,
    RemoteError,
    TransportError,
)
from .log import AsyncLogger, get_logger
from .message import Message, MessageType
from .signature import ObjectPath
from .transport import Node, decode_message, encode_message

if TYPE_CHECKING:
    from .call import Call

__all__ = ['Connection', 'MAX_SERIAL', 'SerialSource']

MAX_SERIAL: int = (1 << 32) - 1


@dataclass
class SerialSource:
    """A threadsafe source of request serials.

    Serials start at ``first``, increase by one, and are never handed out twice.

    Parameters:
        first: The first serial. Must be nonzero.
        upper: The largest serial that may be handed out.
    """

    first: int = 1
    upper: int = MAX_SERIAL
    lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    next_serial: int = field(init=False)

    def __post_init__(self, /) -> None:
        if not 0 < self.first <= self.upper:
            raise ValueError('first serial must be positive and no larger than the upper bound')
        self.next_serial = self.first

    def acquire(self, /) -> int:
        """Get a fresh serial.

        Raises:
            BusError: If every serial has been handed out.
        """
        with self.lock:
            serial = self.next_serial
            if serial > self.upper:
                raise BusError('serials exhausted', upper=self.upper)
            self.next_serial = serial + 1
        return serial


def _error_message(reply: Message, /) -> str:
    if reply.body and isinstance(reply.body[0], str):
        return reply.body[0]
    return reply.error_name or 'peer returned an error'


@dataclass
class Connection:
    """A connection to the bus shared by any number of concurrent callers.

    Parameters:
        node: The transport. Without a node, submitted messages stay in
            :attr:`outbound` for another consumer to drain.
        address: The bus's address, passed to :meth:`Node.send` for every message.
        outbound_capacity: The maximum number of messages waiting to be sent.
        logger: A logger instance.
        serials: The source of request serials.

    Attributes:
        calls: Maps serials to calls awaiting a reply. Only modify while holding
            :attr:`calls_lock`.
        outbound: Messages waiting to be sent.
        closed: Whether the connection was closed. Calls dispatched on a closed
            connection complete immediately with :class:`ConnectionClosedError`.
    """

    node: Optional[Node] = None
    address: Optional[Any] = None
    outbound_capacity: int = 128
    logger: AsyncLogger = field(default_factory=get_logger)
    serials: SerialSource = field(default_factory=SerialSource)
    calls: dict[int, 'Call'] = field(default_factory=dict, init=False, repr=False)
    calls_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    outbound: asyncio.Queue[Message] = field(init=False, repr=False)
    closed: bool = field(default=False, init=False)
    stack: contextlib.AsyncExitStack = field(
        default_factory=contextlib.AsyncExitStack,
        init=False,
        repr=False,
    )

    def __post_init__(self, /) -> None:
        if self.outbound_capacity < 1:
            raise ValueError('outbound capacity must be a positive integer')
        self.outbound = asyncio.Queue(self.outbound_capacity)

    async def __aenter__(self, /) -> 'Connection':
        await self.stack.__aenter__()
        self.closed = False
        if self.node:
            self.node = await self.stack.enter_async_context(self.node)
            workers = [
                asyncio.create_task(self._send_forever(self.node), name='bus-send'),
                asyncio.create_task(self._recv_forever(self.node), name='bus-recv'),
            ]
            for worker in workers:
                self.stack.callback(worker.cancel)
        self.stack.push_async_callback(self.close)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> Optional[bool]:
        return await self.stack.__aexit__(exc_type, exc, traceback)

    def object(self, destination: str, path: str, /) -> BusObject:
        """Get a handle on a remote object.

        Raises:
            ValueError: If the object path is malformed.
        """
        object_path = ObjectPath(path)
        if not object_path.is_valid():
            raise ValueError(f'invalid object path: {path!r}')
        return BusObject(self, destination, object_path)

    def register(self, call: 'Call', /) -> None:
        """Add a call to the pending-call table under its serial.

        Raises:
            BusError: If another call is already registered under the same serial.
        """
        with self.calls_lock:
            if call.serial in self.calls:
                raise BusError('serial already in use', serial=call.serial)
            self.calls[call.serial] = call

    def discard(self, serial: int, /) -> Optional['Call']:
        """Remove a call from the pending-call table without completing it."""
        return self._pop(serial)

    def _pop(self, serial: Optional[int], /) -> Optional['Call']:
        with self.calls_lock:
            return self.calls.pop(serial, None) if serial is not None else None

    async def submit(self, message: Message, /) -> None:
        """Queue a message for sending.

        Waits while the outbound queue is full. On a closed connection, the message is
        dropped and the matching call (if any) completes with
        :class:`ConnectionClosedError`.
        """
        if self.closed:
            error = ConnectionClosedError('connection closed', serial=message.serial)
            await self.fail(message.serial, error)
            return
        await self.outbound.put(message)

    async def resolve(self, reply: Message, /) -> None:
        """Complete the call a reply answers.

        The call is removed from the pending-call table, its body or error is set, and
        the call is put on its notification queue.

        Raises:
            BusError: If the message is not a reply, its reply serial is not an integer,
                or no call awaits it.
        """
        if reply.type not in {MessageType.METHOD_RETURN, MessageType.ERROR}:
            raise BusError('connection only resolves replies', message_type=reply.type.name)
        reply_serial = reply.reply_serial
        if not isinstance(reply_serial, int) or isinstance(reply_serial, bool):
            raise BusError('reply serial must be an integer', reply_serial=repr(reply_serial))
        call = self._pop(reply_serial)
        if call is None:
            raise BusError('received reply to unknown call', reply_serial=reply_serial)
        if reply.type is MessageType.ERROR:
            call.error = RemoteError(
                _error_message(reply),
                name=reply.error_name or '',
                body=list(reply.body),
            )
        else:
            call.body = list(reply.body)
        await call.done.put(call)

    async def fail(self, serial: int, error: BaseException, /) -> None:
        """Complete a pending call with an error. Does nothing if no call awaits ``serial``."""
        call = self._pop(serial)
        if call is not None:
            call.error = error
            await call.done.put(call)

    async def close(self, /) -> None:
        """Close the connection and complete every pending call with an error."""
        self.closed = True
        with self.calls_lock:
            calls, self.calls = list(self.calls.values()), {}
        for call in calls:
            call.error = ConnectionClosedError('connection closed', serial=call.serial)
            try:
                call.done.put_nowait(call)
            except asyncio.QueueFull:
                await self.logger.warn('Notification queue full at close', serial=call.serial)
        if calls:
            await self.logger.info('Connection closed with pending calls', count=len(calls))

    async def _send_forever(self, node: Node, /) -> NoReturn:
        """Drain the outbound queue onto the node."""
        logger = self.logger.bind()
        while True:
            message = await self.outbound.get()
            try:
                await node.send([await encode_message(message)], address=self.address)
            except (TransportError, cbor2.CBOREncodeError) as exc:
                await logger.error(
                    'Connection failed to send message',
                    serial=message.serial,
                    exc_info=exc,
                )
                await self.fail(message.serial, exc)
            finally:
                self.outbound.task_done()

    async def _recv_forever(self, node: Node, /, *, cooldown: float = 0.01) -> NoReturn:
        """Receive replies indefinitely and resolve them."""
        logger = self.logger.bind()
        while True:
            try:
                frames, _ = await node.recv()
                payload, *_ = frames
                reply = await decode_message(payload)
                await logger.debug(
                    'Connection received message',
                    message_type=reply.type.name,
                    reply_serial=reply.reply_serial,
                )
                await self.resolve(reply)
            except (ValueError, cbor2.CBORDecodeError, BusBaseException) as exc:
                await logger.error('Connection failed to process message', exc_info=exc)
                await asyncio.sleep(cooldown)
