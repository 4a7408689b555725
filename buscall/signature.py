"""Type signatures, variants, and reply decoding.

Every value carried in a message body has a type signature: a compact string of type
codes describing its wire type. Envelopes carry the signature of their body in a
header, and header values themselves are wrapped in :class:`Variant`\\s (a value
bundled with its own signature).

This module computes signatures from native Python values and performs the inverse
operation for replies: :func:`store` checks decoded reply values against the types the
caller asked for and writes them into :class:`Ref` cells.

==================== ============== ==================================================
Python type          Type code      Notes
==================== ============== ==================================================
:class:`bool`        ``b``
:class:`int`         ``i x t``      The narrowest of int32, int64, uint64 that fits.
:class:`float`       ``d``
:class:`ObjectPath`  ``o``
:class:`Signature`   ``g``
:class:`str`         ``s``
:class:`bytes`       ``ay``
:class:`Variant`     ``v``
:class:`tuple`       ``(...)``      A struct. Must have at least one member.
:class:`list`        ``a...``       Elements must share a signature. Empty is ``av``.
:class:`dict`        ``a{..}``      Keys must be a basic type. Empty is ``a{sv}``.
==================== ============== ==================================================
"""

import re
import types
import typing
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

from .exception import SignatureMismatchError

__all__ = [
    'BASIC_TYPE_CODES',
    'ObjectPath',
    'Ref',
    'Signature',
    'Variant',
    'get_signature',
    'store',
]

INT32_RANGE = range(-(1 << 31), 1 << 31)
INT64_RANGE = range(-(1 << 63), 1 << 63)
UINT64_RANGE = range(0, 1 << 64)
BASIC_TYPE_CODES = frozenset('ybnqiuxtdsog')

_PATH_ELEMENT = re.compile(r'[A-Za-z0-9_]+')


class ObjectPath(str):
    """The path of an object exported by a peer.

    Examples:
        >>> ObjectPath('/org/freedesktop/DBus').is_valid()
        True
        >>> ObjectPath('/').is_valid()
        True
        >>> ObjectPath('/trailing/').is_valid()
        False
        >>> ObjectPath('relative/path').is_valid()
        False
    """

    def is_valid(self, /) -> bool:
        """Whether this path is absolute and made of non-empty ``[A-Za-z0-9_]`` elements."""
        if self == '/':
            return True
        if not self.startswith('/') or self.endswith('/'):
            return False
        return all(_PATH_ELEMENT.fullmatch(element) for element in self[1:].split('/'))


class Signature(str):
    """A string of type codes."""


@dataclass(frozen=True)
class Variant:
    """A value tagged with its own signature.

    Examples:
        >>> Variant.of('hello')
        Variant(signature='s', value='hello')
        >>> Variant.of(ObjectPath('/a')).signature
        'o'
    """

    signature: Signature
    value: Any

    @classmethod
    def of(cls, value: Any, /) -> 'Variant':
        """Wrap a value, computing its signature."""
        return cls(get_signature(value), value)


def _element_signature(values: Sequence[Any], /, *, default: str) -> str:
    if not values:
        return default
    signatures = {_signature_of(value) for value in values}
    if len(signatures) != 1:
        raise ValueError(
            'elements must share one type (wrap mixed values in Variant): '
            + ', '.join(sorted(signatures))
        )
    return signatures.pop()


def _signature_of(value: Any, /) -> str:
    # ``bool`` is a subclass of ``int``, and both special strings subclass ``str``.
    if isinstance(value, bool):
        return 'b'
    if isinstance(value, int):
        for code, valid_range in (('i', INT32_RANGE), ('x', INT64_RANGE), ('t', UINT64_RANGE)):
            if value in valid_range:
                return code
        raise ValueError(f'integer does not fit in 64 bits: {value}')
    if isinstance(value, float):
        return 'd'
    if isinstance(value, ObjectPath):
        return 'o'
    if isinstance(value, Signature):
        return 'g'
    if isinstance(value, str):
        return 's'
    if isinstance(value, (bytes, bytearray)):
        return 'ay'
    if isinstance(value, Variant):
        return 'v'
    if isinstance(value, tuple):
        if not value:
            raise ValueError('a struct must have at least one member')
        return '(' + ''.join(map(_signature_of, value)) + ')'
    if isinstance(value, list):
        return 'a' + _element_signature(value, default='v')
    if isinstance(value, dict):
        if not value:
            return 'a{sv}'
        key_code = _element_signature(list(value.keys()), default='s')
        if key_code not in BASIC_TYPE_CODES:
            raise TypeError(f'dictionary keys must have a basic type, not {key_code!r}')
        return 'a{' + key_code + _element_signature(list(value.values()), default='v') + '}'
    raise TypeError(f'cannot compute a signature for {type(value).__name__!r}')


def get_signature(*values: Any) -> Signature:
    """Compute the signature of a sequence of values.

    Raises:
        TypeError: If a value has no corresponding wire type.
        ValueError: If a value cannot be represented (for example, an integer that is
            too large or an array with mixed element types).

    Examples:
        >>> get_signature()
        ''
        >>> get_signature('hello', 42, True)
        'sib'
        >>> get_signature([1, 2, 3], {'key': 1.5}, (ObjectPath('/'), b'raw'))
        'aia{sd}(oay)'
        >>> get_signature(1 << 40, 1 << 63)
        'xt'
        >>> get_signature(object())
        Traceback (most recent call last):
          ...
        TypeError: cannot compute a signature for 'object'
    """
    return Signature(''.join(map(_signature_of, values)))


T = TypeVar('T')


@dataclass
class Ref(Generic[T]):
    """A destination for one reply value.

    Parameters:
        type: The expected type of the value.
        value: The stored value. Remains untouched until :func:`store` succeeds.
    """

    type: Any
    value: Optional[T] = None


_NO_MATCH = object()
_UNION_ORIGINS = {Union, getattr(types, 'UnionType', Union)}


def _fit(value: Any, target: Any, /) -> Any:
    """Return the value a destination of the ``target`` type should hold.

    Returns ``_NO_MATCH`` if the value does not fit.
    """
    if target is Any or target is object:
        return value
    origin = typing.get_origin(target)
    if origin is not None and origin in _UNION_ORIGINS:
        for member in typing.get_args(target):
            fitted = _fit(value, member)
            if fitted is not _NO_MATCH:
                return fitted
        return _NO_MATCH
    target = origin or target
    if not isinstance(target, type):
        return _NO_MATCH
    if isinstance(value, Variant) and target is not Variant:
        return _fit(value.value, target)
    if isinstance(value, bool) and target in (int, float):
        return _NO_MATCH
    if target is float and isinstance(value, int):
        return float(value)
    return value if isinstance(value, target) else _NO_MATCH


def _type_name(target: Any, /) -> str:
    return getattr(target, '__name__', repr(target))


def store(body: Sequence[Any], /, *refs: Ref[Any]) -> None:
    """Store reply values into destinations.

    Every value is checked before any destination is written, so a mismatch leaves all
    destinations unmodified.

    Parameters:
        body: Decoded reply values.
        refs: One destination per value, in order.

    Raises:
        SignatureMismatchError: If the number or types of values and destinations
            disagree.

    Examples:
        >>> name, count = Ref(str), Ref(int)
        >>> store(['bus', 3], name, count)
        >>> name.value, count.value
        ('bus', 3)
        >>> store(['bus'], name, count)
        Traceback (most recent call last):
          ...
        buscall.exception.SignatureMismatchError: mismatched signature
    """
    if len(body) != len(refs):
        raise SignatureMismatchError(
            'mismatched signature',
            expected=len(refs),
            received=len(body),
        )
    values = []
    for index, (value, ref) in enumerate(zip(body, refs)):
        fitted = _fit(value, ref.type)
        if fitted is _NO_MATCH:
            raise SignatureMismatchError(
                'mismatched signature',
                index=index,
                expected=_type_name(ref.type),
                received=type(value).__name__,
            )
        values.append(fitted)
    for ref, value in zip(refs, values):
        ref.value = value
