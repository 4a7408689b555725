"""Remote objects and method calls.

A :class:`BusObject` names a remote object (a destination and an object path) reachable
through one :class:`buscall.conn.Connection`. Calling a method has two flavors:

* :meth:`BusObject.go` dispatches the call and returns immediately. If a reply is
  expected, the returned :class:`Pending` outcome holds a :class:`Call` record that is
  delivered to a notification queue once the reply arrives.
* :meth:`BusObject.call` dispatches the call and waits for the reply.

Example::

    async with Connection(node_from_address('udp://localhost:7000')) as conn:
        bus = conn.object('org.freedesktop.DBus', '/org/freedesktop/DBus')
        call = await bus.call('org.freedesktop.DBus.GetId')
        bus_id = Ref(str)
        call.store(bus_id)
"""

import asyncio
import typing
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Union

from .message import Flags, new_method_call
from .signature import ObjectPath, Ref, store

if TYPE_CHECKING:
    from .conn import Connection

__all__ = ['BusObject', 'Call', 'DEFAULT_QUEUE_CAPACITY', 'Fired', 'Outcome', 'Pending']

DEFAULT_QUEUE_CAPACITY: int = 10


@dataclass(eq=False)
class Call:
    """A pending or completed method call.

    Parameters:
        destination: The bus name the call was sent to.
        path: The object path the call was sent to.
        method: The member name (without the interface).
        args: The call's arguments.
        done: Receives this record once the call completes.
        serial: The request's serial number.

    Attributes:
        error: After completion, the error status. Either a
            :class:`buscall.exception.RemoteError` sent by the peer or some other error,
            such as :class:`buscall.exception.ConnectionClosedError`. ``None`` on success.
        body: After completion, the reply's values.
    """

    destination: str
    path: ObjectPath
    method: str
    args: tuple[Any, ...]
    done: asyncio.Queue['Call'] = field(repr=False)
    serial: int = 0
    error: Optional[BaseException] = None
    body: list[Any] = field(default_factory=list)

    def store(self, /, *refs: Ref[Any]) -> None:
        """Store the reply's values into the given destinations.

        Raises:
            BaseException: The call's error status, if set. The body is not consulted.
            SignatureMismatchError: If the body does not fit the destinations. No
                destination is written in that case.
        """
        if self.error is not None:
            raise self.error
        store(self.body, *refs)

    def result(self, /) -> tuple[Any, ...]:
        """The reply's values, or raise the call's error status."""
        if self.error is not None:
            raise self.error
        return tuple(self.body)


@dataclass(frozen=True)
class Pending:
    """A dispatched call whose reply is awaited through :attr:`Call.done`."""

    call: Call


@dataclass(frozen=True)
class Fired:
    """A dispatched call that expects no reply."""

    serial: int


Outcome = Union[Pending, Fired]


@dataclass(frozen=True)
class BusObject:
    """A remote object on which methods can be invoked.

    Build one with :meth:`buscall.conn.Connection.object`.
    """

    conn: 'Connection' = field(repr=False)
    destination: str
    path: ObjectPath

    async def go(
        self,
        method: str,
        /,
        *args: Any,
        flags: Flags = Flags.NONE,
        done: Optional[asyncio.Queue[Call]] = None,
    ) -> Outcome:
        """Call a method without waiting for the reply.

        Parameters:
            method: The member name. If it contains a dot, the part before the last dot
                names the interface the method is called on.
            args: Method arguments.
            flags: Only :attr:`Flags.NO_AUTO_START` and :attr:`Flags.NO_REPLY_EXPECTED`
                are honored. Other bits are dropped.
            done: A queue that receives the :class:`Call` once it completes. If not
                provided, a new queue is allocated. Ignored if no reply is expected.

        Returns:
            :class:`Pending` with the new call record, or :class:`Fired` if
            :attr:`Flags.NO_REPLY_EXPECTED` is set.

        Raises:
            AssertionError: If ``done`` has no free capacity. Since the connection must
                be able to deliver the completed call without waiting, this is a bug in
                the caller.
        """
        flags = Flags(flags)
        reply_expected = not flags & Flags.NO_REPLY_EXPECTED
        if reply_expected:
            if done is None:
                done = asyncio.Queue(DEFAULT_QUEUE_CAPACITY)
            elif done.full():
                raise AssertionError('BusObject.go: notification queue has no free capacity')
        serial = self.conn.serials.acquire()
        message = new_method_call(
            self.destination,
            self.path,
            method,
            args,
            serial=serial,
            flags=flags,
        )
        await self.conn.logger.debug(
            'Dispatching method call',
            destination=self.destination,
            path=self.path,
            interface=message.interface,
            member=message.member,
            serial=serial,
            reply_expected=reply_expected,
        )
        if not reply_expected:
            await self.conn.submit(message)
            return Fired(serial)
        call = Call(
            self.destination,
            self.path,
            typing.cast(str, message.member),
            args,
            typing.cast(asyncio.Queue[Call], done),
            serial=serial,
        )
        self.conn.register(call)
        try:
            await self.conn.submit(message)
        except BaseException:
            # The message was never queued, so no reply can remove the entry.
            self.conn.discard(serial)
            raise
        return Pending(call)

    async def call(self, method: str, /, *args: Any, flags: Flags = Flags.NONE) -> Call:
        """Call a method and wait for its reply.

        There is no timeout. Wrap this coroutine in :func:`asyncio.wait_for` to bound the
        wait.

        Raises:
            ValueError: If :attr:`Flags.NO_REPLY_EXPECTED` is set, since there would be
                nothing to wait for.
        """
        if Flags(flags) & Flags.NO_REPLY_EXPECTED:
            raise ValueError('a blocking call needs a reply (use go() instead)')
        outcome = await self.go(method, *args, flags=flags, done=asyncio.Queue(1))
        return await typing.cast(Pending, outcome).call.done.get()
