"""Message envelopes.

An envelope is the unit of transmission on the bus: a message type, flags, a serial
number correlating requests with replies, a set of typed header fields, and a body (a
sequence of values). This module builds method-call envelopes and exposes the header
fields replies are resolved with.
"""

import enum
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Optional

from .signature import ObjectPath, Signature, Variant, get_signature

__all__ = [
    'Flags',
    'HeaderField',
    'Message',
    'MessageType',
    'new_method_call',
    'split_method',
]


class MessageType(enum.IntEnum):
    """The message type ID.

    Attributes:
        METHOD_CALL: A request to invoke a method on a remote object.
        METHOD_RETURN: A successful reply to a method call.
        ERROR: An error reply to a method call.
        SIGNAL: A broadcast event. This client only sends calls and receives replies.
    """

    INVALID = 0
    METHOD_CALL = 1
    METHOD_RETURN = 2
    ERROR = 3
    SIGNAL = 4


class Flags(enum.IntFlag):
    """Message flag bits.

    Attributes:
        NO_REPLY_EXPECTED: The caller does not want a reply. The peer may still send one,
            but nothing waits for it.
        NO_AUTO_START: The bus should not launch the destination if it is not running.
        ALLOW_INTERACTIVE_AUTHORIZATION: Accepted by the bus protocol but not sent on
            method calls made through :class:`buscall.call.BusObject`.
    """

    NONE = 0
    NO_REPLY_EXPECTED = 0x1
    NO_AUTO_START = 0x2
    ALLOW_INTERACTIVE_AUTHORIZATION = 0x4


CALL_FLAGS = Flags.NO_AUTO_START | Flags.NO_REPLY_EXPECTED


class HeaderField(enum.IntEnum):
    """Header field codes."""

    PATH = 1
    INTERFACE = 2
    MEMBER = 3
    ERROR_NAME = 4
    REPLY_SERIAL = 5
    DESTINATION = 6
    SENDER = 7
    SIGNATURE = 8
    UNIX_FDS = 9


@dataclass
class Message:
    """An envelope.

    Parameters:
        type: The message type.
        serial: The sender-assigned serial number. Nonzero for valid messages.
        flags: Flag bits.
        headers: Header field values, each wrapped in a variant.
        body: Body values.
        order: Byte order the body should be marshalled in (``'little'`` or ``'big'``).
    """

    type: MessageType
    serial: int = 0
    flags: Flags = Flags.NONE
    headers: dict[HeaderField, Variant] = field(default_factory=dict)
    body: tuple[Any, ...] = ()
    order: str = 'little'

    def get_header(self, header: HeaderField, /, default: Any = None) -> Any:
        """Get the unwrapped value of a header field."""
        variant = self.headers.get(header)
        return default if variant is None else variant.value

    @property
    def path(self, /) -> Optional[ObjectPath]:
        path = self.get_header(HeaderField.PATH)
        return None if path is None else ObjectPath(path)

    @property
    def interface(self, /) -> Optional[str]:
        return self.get_header(HeaderField.INTERFACE)

    @property
    def member(self, /) -> Optional[str]:
        return self.get_header(HeaderField.MEMBER)

    @property
    def destination(self, /) -> Optional[str]:
        return self.get_header(HeaderField.DESTINATION)

    @property
    def signature(self, /) -> Signature:
        return Signature(self.get_header(HeaderField.SIGNATURE, ''))

    @property
    def error_name(self, /) -> Optional[str]:
        return self.get_header(HeaderField.ERROR_NAME)

    @property
    def reply_serial(self, /) -> Optional[int]:
        return self.get_header(HeaderField.REPLY_SERIAL)


def split_method(method: str, /) -> tuple[Optional[str], str]:
    """Split a method identifier into an interface and member name.

    The interface is everything before the last dot. Without a dot (or with nothing
    before it), the interface is unspecified and the peer resolves it by other means.

    Examples:
        >>> split_method('org.freedesktop.DBus.Introspect')
        ('org.freedesktop.DBus', 'Introspect')
        >>> split_method('Ping')
        (None, 'Ping')
        >>> split_method('.Ping')
        (None, 'Ping')
    """
    interface, _, member = method.rpartition('.')
    return interface or None, member


def new_method_call(
    destination: str,
    path: ObjectPath,
    method: str,
    args: Sequence[Any] = (),
    /,
    *,
    serial: int,
    flags: Flags = Flags.NONE,
) -> Message:
    """Build a method-call envelope.

    Parameters:
        destination: The bus name of the peer that should receive the call.
        path: The remote object's path.
        method: A method identifier, optionally prefixed by an interface name. See
            :func:`split_method`.
        args: The body. A signature header is attached only if the body is nonempty.
        serial: The request's serial number.
        flags: Flag bits. Only :attr:`Flags.NO_AUTO_START` and
            :attr:`Flags.NO_REPLY_EXPECTED` are kept.

    Examples:
        >>> message = new_method_call('org.example', ObjectPath('/'), 'a.b.Echo', ['hi'],
        ...                           serial=7, flags=Flags(0xff))
        >>> message.interface, message.member, message.signature, int(message.flags)
        ('a.b', 'Echo', 's', 3)
    """
    interface, member = split_method(method)
    headers = {
        HeaderField.PATH: Variant(Signature('o'), ObjectPath(path)),
        HeaderField.DESTINATION: Variant(Signature('s'), destination),
        HeaderField.MEMBER: Variant(Signature('s'), member),
    }
    if interface is not None:
        headers[HeaderField.INTERFACE] = Variant(Signature('s'), interface)
    body = tuple(args)
    if body:
        headers[HeaderField.SIGNATURE] = Variant(Signature('g'), get_signature(*body))
    return Message(
        type=MessageType.METHOD_CALL,
        serial=serial,
        flags=Flags(flags) & CALL_FLAGS,
        headers=headers,
        body=body,
    )
