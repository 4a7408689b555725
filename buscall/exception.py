"""Common bus client exceptions."""

from typing import Any

# isort: unique-list
__all__ = [
    'BusBaseException',
    'BusError',
    'ConnectionClosedError',
    'RemoteError',
    'SignatureMismatchError',
    'TransportError',
]


class BusBaseException(Exception):
    """Base exception for the bus client.

    Parameters:
        message: A human-readable description of the exception.
        context: Machine-readable data.
    """

    def __init__(self, message: str, /, **context: Any) -> None:
        super().__init__(message)
        self.context = context

    def __repr__(self, /) -> str:
        cls_name, args = self.__class__.__name__, [repr(self.args[0])]
        args.extend(f'{name}={value!r}' for name, value in self.context.items())
        return f'{cls_name}({", ".join(args)})'


class BusError(BusBaseException):
    """General protocol error, such as a reply nobody is waiting for."""


class SignatureMismatchError(BusBaseException):
    """The reply body does not fit the requested destinations."""


class RemoteError(BusBaseException):
    """An error reply sent by the peer.

    The error name is available as ``context['name']`` and the raw error body as
    ``context['body']``.
    """

    @property
    def name(self, /) -> str:
        return str(self.context.get('name', ''))


class ConnectionClosedError(BusBaseException):
    """The connection closed before the call could complete."""


class TransportError(BusBaseException):
    """The underlying transport failed to send or receive a message."""
