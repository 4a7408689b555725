"""An asynchronous client for issuing method calls over a message bus."""

from .call import BusObject, Call, Fired, Outcome, Pending
from .conn import Connection, SerialSource
from .exception import (
    BusBaseException,
    BusError,
    ConnectionClosedError,
    RemoteError,
    SignatureMismatchError,
    TransportError,
)
from .message import Flags, Message, MessageType, new_method_call
from .signature import ObjectPath, Ref, Signature, Variant, get_signature, store
from .transport import DatagramNode, Node, SocketNode, node_from_address

__version__ = '0.1.0'

# isort: unique-list
__all__ = [
    'BusBaseException',
    'BusError',
    'BusObject',
    'Call',
    'Connection',
    'ConnectionClosedError',
    'DatagramNode',
    'Fired',
    'Flags',
    'Message',
    'MessageType',
    'Node',
    'ObjectPath',
    'Outcome',
    'Pending',
    'Ref',
    'RemoteError',
    'SerialSource',
    'Signature',
    'SignatureMismatchError',
    'SocketNode',
    'TransportError',
    'Variant',
    'get_signature',
    'new_method_call',
    'node_from_address',
    'store',
]
