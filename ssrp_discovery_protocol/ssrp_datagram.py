#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Encoding of SSRP request datagrams and framing of SSRP response datagrams.

Requests are one of three shapes:

    CLNT_BCAST_EX    02
    CLNT_UCAST_INST  04 <instance-name> 00
    CLNT_UCAST_DAC   0F 01 <instance-name> 00

Responses begin with the SVR_RESP byte (05) followed by a little-endian 16-bit
size field and the response data.
"""

from __future__ import annotations

import struct
from enum import Enum

from .internal_types import *
from .exceptions import EncodingError, MalformedResponseError
from .constants import (
    CLNT_BCAST_EX,
    CLNT_UCAST_INST,
    CLNT_UCAST_DAC,
    SVR_RESP,
    DAC_PROTOCOL_VERSION,
    MAX_INSTANCE_NAME_LEN,
  )

RESPONSE_HEADER_SIZE = 3
"""Size of the SVR_RESP byte plus the 16-bit size field."""

class SsrpRequestKind(Enum):
    """The three kinds of SSRP request, keyed by their opcode."""
    ENUMERATE_ALL = CLNT_BCAST_EX
    INSTANCE_BY_NAME = CLNT_UCAST_INST
    DAC_BY_NAME = CLNT_UCAST_DAC

class SsrpRequest:
    """A single SSRP request.

    ENUMERATE_ALL requests carry no instance name; INSTANCE_BY_NAME and DAC_BY_NAME
    requests always carry one.
    """

    kind: SsrpRequestKind
    """Which request this is."""

    instance_name: Optional[str]
    """The instance name for INSTANCE_BY_NAME and DAC_BY_NAME requests; None for ENUMERATE_ALL."""

    def __init__(self, kind: SsrpRequestKind, instance_name: Optional[str]=None):
        if kind == SsrpRequestKind.ENUMERATE_ALL:
            if instance_name is not None:
                raise ValueError("ENUMERATE_ALL requests do not take an instance name")
        elif instance_name is None:
            raise ValueError(f"{kind.name} requests require an instance name")
        self.kind = kind
        self.instance_name = instance_name

    @classmethod
    def enumerate_all(cls) -> SsrpRequest:
        return cls(SsrpRequestKind.ENUMERATE_ALL)

    @classmethod
    def instance_by_name(cls, instance_name: str) -> SsrpRequest:
        return cls(SsrpRequestKind.INSTANCE_BY_NAME, instance_name)

    @classmethod
    def dac_by_name(cls, instance_name: str) -> SsrpRequest:
        return cls(SsrpRequestKind.DAC_BY_NAME, instance_name)

    @property
    def raw_data(self) -> bytes:
        """The encoded request datagram."""
        return encode_request(self)

    @property
    def expects_multiple_responses(self) -> bool:
        """True if the request may be answered by more than one datagram (i.e., it may be broadcast)."""
        return self.kind == SsrpRequestKind.ENUMERATE_ALL

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, SsrpRequest):
            return False
        return self.kind == other.kind and self.instance_name == other.instance_name

    def __hash__(self) -> int:
        return hash((self.kind, self.instance_name))

    def __str__(self) -> str:
        if self.instance_name is None:
            return f"SsrpRequest({self.kind.name})"
        return f"SsrpRequest({self.kind.name}, {self.instance_name!r})"

    def __repr__(self) -> str:
        return str(self)

def encode_instance_name(instance_name: str) -> bytes:
    """Validates an instance name and returns its NUL-terminated wire encoding.

    Raises EncodingError if the name is empty, longer than MAX_INSTANCE_NAME_LEN
    characters, not pure ASCII, or contains a NUL character.
    """
    if len(instance_name) == 0:
        raise EncodingError("Instance name must not be empty")
    if len(instance_name) > MAX_INSTANCE_NAME_LEN:
        raise EncodingError(
            f"Instance name {instance_name!r} is longer than {MAX_INSTANCE_NAME_LEN} characters"
          )
    try:
        name_bytes = instance_name.encode('ascii')
    except UnicodeEncodeError as e:
        raise EncodingError(f"Instance name {instance_name!r} contains non-ASCII characters") from e
    if b'\x00' in name_bytes:
        raise EncodingError(f"Instance name {instance_name!r} contains a NUL character")
    return name_bytes + b'\x00'

def encode_request(request: SsrpRequest) -> bytes:
    """Encodes an SsrpRequest into its exact wire representation."""
    kind = request.kind
    if kind == SsrpRequestKind.ENUMERATE_ALL:
        return bytes([CLNT_BCAST_EX])
    assert request.instance_name is not None
    name_bytes = encode_instance_name(request.instance_name)
    if kind == SsrpRequestKind.INSTANCE_BY_NAME:
        return bytes([CLNT_UCAST_INST]) + name_bytes
    assert kind == SsrpRequestKind.DAC_BY_NAME
    return bytes([CLNT_UCAST_DAC, DAC_PROTOCOL_VERSION]) + name_bytes

def decode_request(data: bytes) -> SsrpRequest:
    """Decodes a raw request datagram, as a SQL Server Browser service would.

    A trailing NUL terminator on the instance name is optional.

    Raises EncodingError if the datagram is not a valid request.
    """
    if len(data) == 0:
        raise EncodingError("Empty request datagram")
    opcode = data[0]
    if opcode == CLNT_BCAST_EX:
        if len(data) != 1:
            raise EncodingError(f"Unexpected {len(data) - 1} trailing bytes in CLNT_BCAST_EX request")
        return SsrpRequest.enumerate_all()
    if opcode == CLNT_UCAST_INST:
        kind = SsrpRequestKind.INSTANCE_BY_NAME
        name_data = data[1:]
    elif opcode == CLNT_UCAST_DAC:
        if len(data) < 2 or data[1] != DAC_PROTOCOL_VERSION:
            raise EncodingError("CLNT_UCAST_DAC request has a missing or unsupported protocol version")
        kind = SsrpRequestKind.DAC_BY_NAME
        name_data = data[2:]
    else:
        raise EncodingError(f"Unknown request opcode {opcode:#04x}")
    if name_data.endswith(b'\x00'):
        name_data = name_data[:-1]
    try:
        instance_name = name_data.decode('ascii')
    except UnicodeDecodeError as e:
        raise EncodingError("Instance name in request is not ASCII") from e
    # re-validate the name the same way the encoder does
    encode_instance_name(instance_name)
    return SsrpRequest(kind, instance_name)

def decode_response_frame(data: bytes) -> bytes:
    """Validates the SVR_RESP header of a response datagram and returns the response data.

    The size field must match the number of bytes that follow the header exactly.

    Raises MalformedResponseError if the datagram is truncated or mis-framed.
    """
    if len(data) < 1:
        raise MalformedResponseError("Empty response datagram")
    if data[0] != SVR_RESP:
        raise MalformedResponseError(f"Expected SVR_RESP ({SVR_RESP:#04x}), found {data[0]:#04x}")
    if len(data) < RESPONSE_HEADER_SIZE:
        raise MalformedResponseError("Response datagram is too short to contain a size field")
    size = struct.unpack_from('<H', data, 1)[0]
    data_size = len(data) - RESPONSE_HEADER_SIZE
    if size > data_size:
        raise MalformedResponseError(
            f"Truncated response: header declares {size} bytes but datagram carries {data_size}"
          )
    if size < data_size:
        raise MalformedResponseError(
            f"Mismatch between response size {size} and datagram data size {data_size}"
          )
    return data[RESPONSE_HEADER_SIZE:]

def encode_response_frame(payload: bytes) -> bytes:
    """Wraps response data in an SVR_RESP header. Used by responders and test doubles."""
    if len(payload) > 0xFFFF:
        raise EncodingError(f"Response data of {len(payload)} bytes does not fit in a 16-bit size field")
    return struct.pack('<BH', SVR_RESP, len(payload)) + payload
