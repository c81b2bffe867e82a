#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Type hints used internally by this package"""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    AsyncContextManager,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    MutableMapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Type,
    TypeVar,
    Union,
    cast,
)

from types import TracebackType
from ipaddress import IPv4Address, IPv6Address

from typing_extensions import Self

Jsonable = Union[Dict[str, 'Jsonable'], List['Jsonable'], str, int, float, bool, None]
"""A type hint for a simple JSON-serializable value; i.e., str, int, float, bool, None, Dict[str, Jsonable], List[Jsonable]"""

JsonableDict = Dict[str, Jsonable]
"""A type hint for a simple JSON-serializable dict; i.e., Dict[str, Jsonable]"""

HostAndPort = Tuple[str, int]
"""A (host, port) socket address as returned by recvfrom() for IPv4. IPv6 addresses
   are trimmed to the same shape."""

IpAddress = Union[IPv4Address, IPv6Address]
"""An IPv4 or IPv6 address as parsed by ipaddress.ip_address()."""
