"""Message transport.

A :class:`Node` moves discrete binary messages between this process and the bus. Nodes
know nothing about envelopes; :func:`encode_message` and :func:`decode_message` frame a
:class:`buscall.message.Message` as a single CBOR-encoded part.

The framing preserves the types that matter for signatures by tagging them:

========================= ========= ==============================
Python type               CBOR tag  Content
========================= ========= ==============================
:class:`Variant`          27500     ``[signature, value]``
:class:`ObjectPath`       27501     text string
:class:`Signature`        27502     text string
:class:`tuple` (struct)   27503     array
========================= ========= ==============================
"""

import abc
import asyncio
import contextlib
import enum
import socket
import types
import typing
from collections.abc import AsyncIterator, Collection
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional, TypeVar, Union
from urllib.parse import urlsplit

import cbor2
import zmq
import zmq.asyncio
import zmq.error

from .exception import TransportError
from .message import Flags, HeaderField, Message, MessageType
from .signature import ObjectPath, Signature, Variant

__all__ = [
    'DatagramNode',
    'Node',
    'SocketNode',
    'decode_message',
    'encode_message',
    'node_from_address',
]


class Tag(enum.IntEnum):
    VARIANT = 27500
    OBJECT_PATH = 27501
    SIGNATURE = 27502
    STRUCT = 27503


Segments = tuple[list[bytes], Any]
NodeType = TypeVar('NodeType', bound='Node')
SocketOptions = dict[int, Union[int, bytes]]
SocketOptionType = tuple[int, int, Union[int, bytes]]


@dataclass  # type: ignore[misc]
class Node(abc.ABC):  # https://github.com/python/mypy/issues/5374
    """A transceiver of discrete binary messages.

    A node wraps an underlying transport that it can repeatedly open, close, and reopen.
    :class:`Node` supports the async context manager protocol (reusable) for
    automatically managing the transport.

    Attributes:
        send_count: The number of messages sent since the transport was opened.
        recv_count: The number of messages received since the transport was opened.
    """

    recv_queue: asyncio.Queue[Segments] = field(
        default_factory=lambda: asyncio.Queue(128),
        init=False,
        repr=False,
    )
    send_count: int = field(default=0, init=False, repr=False)
    recv_count: int = field(default=0, init=False, repr=False)

    async def __aenter__(self: NodeType, /) -> NodeType:
        if self.closed:
            await self.open()
            self.send_count = self.recv_count = 0
        return self

    async def __aexit__(
        self,
        _exc_type: Optional[type[BaseException]],
        _exc: Optional[BaseException],
        _traceback: Optional[types.TracebackType],
        /,
    ) -> None:
        if not self.closed:
            self.close()

    @abc.abstractmethod
    async def send(self, parts: list[bytes], /, *, address: Optional[Any] = None) -> None:
        """Send a message.

        Parameters:
            parts: Zero or more data segments.
            address: The destination's address. The type depends on the transport.

        Raises:
            TransportError: If the transport cannot send the message. May reopen the
                internal transport.
        """

    async def recv(self, /) -> Segments:
        """Receive a message.

        Returns:
            Zero or more data segments and the sender's address.

        Raises:
            TransportError: If the transport cannot receive messages.
        """
        if not self.can_recv:
            raise TransportError('transport does not support recv')
        item = await self.recv_queue.get()
        self.recv_count += 1
        return item

    @abc.abstractmethod
    async def open(self, /) -> None:
        """Open the internal transport."""

    @abc.abstractmethod
    def close(self, /) -> None:
        """Close the internal transport."""

    @property
    @abc.abstractmethod
    def closed(self, /) -> bool:
        """Whether the internal transport is closed."""

    @property
    @abc.abstractmethod
    def can_recv(self, /) -> bool:
        """Whether the transport can receive messages."""

    @contextlib.asynccontextmanager
    async def _maybe_reopen(self, /, *exc_types: type[Exception]) -> AsyncIterator[None]:
        """Reopen the transport when one of the given errors occurs.

        Raises:
            TransportError: If the transport is closed or was reopened.
        """
        if self.closed:
            raise TransportError('transport is closed')
        exc_types = exc_types or (Exception,)
        try:
            yield
        except exc_types as exc:
            self.close()
            await self.open()
            raise TransportError('node transport reopened') from exc


@dataclass
class DatagramNode(Node, asyncio.DatagramProtocol):
    """A wrapper around :mod:`asyncio`'s datagram support.

    Parameters:
        host: Hostname.
        port: Port number.
        bind: Whether to bind the socket to a local address or connect to a remote one.
        options: Socket options in the form ``(level, option, value)``.
    """

    host: str = ''
    port: int = 8000
    bind: bool = True
    options: Collection[SocketOptionType] = frozenset()
    transport: Optional[asyncio.DatagramTransport] = field(
        default=None,
        init=False,
        repr=False,
    )

    def datagram_received(self, data: bytes, addr: Any, /) -> None:
        with contextlib.suppress(asyncio.QueueFull):
            self.recv_queue.put_nowait(([data], addr))

    def connection_lost(self, exc: Optional[Exception], /) -> None:
        self.close()

    async def send(
        self,
        parts: list[bytes],
        /,
        *,
        address: Optional[tuple[str, int]] = None,
    ) -> None:
        if not self.transport:
            raise TransportError('transport is not yet open')
        async with self._maybe_reopen(OSError):
            for part in parts:
                self.transport.sendto(part, addr=address)
        self.send_count += 1

    async def open(self, /) -> None:
        loop = asyncio.get_running_loop()
        kwargs: dict[str, Any] = {
            ('local_addr' if self.bind else 'remote_addr'): (self.host, self.port),
            'family': socket.AF_INET,
        }
        transport, _ = await loop.create_datagram_endpoint(lambda: self, **kwargs)
        self.transport = typing.cast(asyncio.DatagramTransport, transport)
        sock = self.transport.get_extra_info('socket')
        for level, option, value in self.options:
            sock.setsockopt(level, option, value)

    def close(self, /) -> None:
        if self.transport:
            self.transport.close()

    @property
    def closed(self, /) -> bool:
        return self.transport.is_closing() if self.transport else True

    @property
    def can_recv(self, /) -> bool:
        return True

    @classmethod
    def from_address(
        cls,
        /,
        address: str,
        *,
        bind: bool = True,
        options: Collection[SocketOptionType] = frozenset(),
    ) -> 'DatagramNode':
        """Build a datagram node from an address of the form ``udp://hostname:port``.

        Raises:
            ValueError: If the address is not a valid UDP address.
        """
        components = urlsplit(address)
        if components.scheme != 'udp' or not components.hostname or not components.port:
            raise ValueError('must provide a UDP address')
        return DatagramNode(
            host=components.hostname,
            port=components.port,
            bind=bind,
            options=options,
        )


@dataclass
class SocketNode(Node):
    """A ZMQ ``DEALER`` socket connected to a routing peer.

    The socket is closed and rebuilt when a send or receive times out, which resets the
    socket's internal state.

    Parameters:
        socket_type: The socket type (a constant defined under :mod:`zmq`).
        options: A mapping of ZMQ socket option symbols to their values.
        connections: A set of addresses to connect to.
        bindings: A set of addresses to bind to.
    """

    socket_type: int = zmq.DEALER
    options: SocketOptions = field(default_factory=dict)
    bindings: frozenset[str] = frozenset()
    connections: frozenset[str] = frozenset()
    socket: zmq.asyncio.Socket = field(init=False, repr=False)
    recv_task: asyncio.Future[NoReturn] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future(),
        init=False,
        repr=False,
    )

    def __post_init__(self, /) -> None:
        self.bindings = frozenset(self.bindings)
        self.connections = frozenset(self.connections)
        if self.socket_type == zmq.DEALER:
            self.options.setdefault(zmq.PROBE_ROUTER, 1)

    @property
    def identity(self, /) -> bytes:
        """The ZMQ identity of this socket."""
        ident = self.options.get(zmq.IDENTITY)
        return ident if isinstance(ident, bytes) else b'(anonymous)'

    async def send(
        self,
        parts: list[bytes],
        /,
        *,
        address: Optional[bytes] = None,
    ) -> None:
        if not address:
            raise TransportError('must provide an address')
        async with self._maybe_reopen(zmq.error.Again):
            await self.socket.send_multipart([address, *parts])
        self.send_count += 1

    async def _recv_forever(self, /) -> NoReturn:
        """Receive messages indefinitely and enqueue them."""
        while True:
            with contextlib.suppress(TransportError):
                async with self._maybe_reopen(zmq.error.Again):
                    sender_id, *frames = await self.socket.recv_multipart()
                    await self.recv_queue.put((list(frames), sender_id))

    async def open(self, /) -> None:
        ctx = zmq.asyncio.Context.instance()
        self.socket = ctx.socket(self.socket_type)
        for name, value in self.options.items():
            self.socket.set(name, value)
        for address in self.bindings:
            self.socket.bind(address)
        for address in self.connections:
            self.socket.connect(address)
        self.recv_task = asyncio.create_task(self._recv_forever(), name='recv')

    def close(self, /) -> None:
        self.recv_task.cancel()
        self.socket.close()

    @property
    def closed(self, /) -> bool:
        return bool(self.socket.closed) if getattr(self, 'socket', None) else True

    @property
    def can_recv(self, /) -> bool:
        return True


def node_from_address(address: str, /, *, options: Optional[SocketOptions] = None) -> Node:
    """Build an unopened node that connects to the bus at the given address.

    Parameters:
        address: Either ``udp://host:port`` or a ZMQ endpoint (``tcp://``, ``ipc://``,
            or ``inproc://``).
        options: ZMQ socket options. Ignored for UDP.

    Raises:
        ValueError: If the address scheme is not supported.
    """
    scheme = urlsplit(address).scheme
    if scheme == 'udp':
        return DatagramNode.from_address(address, bind=False)
    if scheme in {'tcp', 'ipc', 'inproc'}:
        return SocketNode(options=dict(options or {}), connections=frozenset({address}))
    raise ValueError(f'unsupported bus address: {address!r}')


def _to_wire(value: Any, /) -> Any:
    """Convert a value into plain CBOR-encodable objects, tagging special types."""
    if isinstance(value, Variant):
        return cbor2.CBORTag(Tag.VARIANT, [str(value.signature), _to_wire(value.value)])
    if isinstance(value, ObjectPath):
        return cbor2.CBORTag(Tag.OBJECT_PATH, str(value))
    if isinstance(value, Signature):
        return cbor2.CBORTag(Tag.SIGNATURE, str(value))
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, str):
        return str(value)
    if isinstance(value, tuple):
        return cbor2.CBORTag(Tag.STRUCT, [_to_wire(member) for member in value])
    if isinstance(value, list):
        return [_to_wire(element) for element in value]
    if isinstance(value, dict):
        return {_to_wire(key): _to_wire(item) for key, item in value.items()}
    return value


def _tag_hook(tag: cbor2.CBORTag, _immutable: bool, /) -> Any:
    if tag.tag == Tag.VARIANT and isinstance(tag.value, list) and len(tag.value) == 2:
        signature, value = tag.value
        return Variant(Signature(signature), value)
    if tag.tag == Tag.OBJECT_PATH:
        return ObjectPath(tag.value)
    if tag.tag == Tag.SIGNATURE:
        return Signature(tag.value)
    if tag.tag == Tag.STRUCT:
        return tuple(tag.value)
    return tag


def _pack(message: Message, /) -> bytes:
    headers = {int(header): _to_wire(value) for header, value in message.headers.items()}
    frame = [
        message.order,
        int(message.type),
        int(message.flags),
        message.serial,
        headers,
        [_to_wire(value) for value in message.body],
    ]
    return cbor2.dumps(frame)


def _unpack(buf: bytes, /) -> Message:
    frame = cbor2.loads(buf, tag_hook=_tag_hook)
    if not isinstance(frame, list) or len(frame) != 6:
        raise ValueError('malformed message frame')
    order, message_type, flags, serial, headers, body = frame
    if not isinstance(headers, dict) or not isinstance(body, list):
        raise ValueError('malformed message frame')
    for value in headers.values():
        if not isinstance(value, Variant):
            raise ValueError('header values must be variants')
    return Message(
        type=MessageType(message_type),
        serial=serial,
        flags=Flags(flags),
        headers={HeaderField(header): value for header, value in headers.items()},
        body=tuple(body),
        order=order,
    )


async def encode_message(message: Message, /) -> bytes:
    """Frame a message as a CBOR-encoded buffer in the default executor.

    Raises:
        cbor2.CBOREncodeError: If the encoding fails.
    """
    return await asyncio.to_thread(_pack, message)


async def decode_message(buf: bytes, /) -> Message:
    """Decode a CBOR-encoded message frame in the default executor.

    Raises:
        cbor2.CBORDecodeError: If the decoding fails.
        ValueError: If the frame is not a valid message.
    """
    return await asyncio.to_thread(_unpack, buf)
