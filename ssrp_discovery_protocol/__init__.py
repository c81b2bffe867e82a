# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Package ssrp_discovery_protocol implements the client side of Microsoft's SQL Server Resolution Protocol (SSRP).

SSRP ([MC-SQLR]) is a simple UDP protocol spoken by the SQL Server Browser service on port 1434. A
client can:

  * broadcast or multicast an enumeration request and collect a response from every browser
    service on the network,
  * ask one host to enumerate its instances,
  * ask one host for the endpoints (TCP port, named pipe, ...) of a named instance, or
  * ask one host for the dedicated admin connection (DAC) port of a named instance.

This package only discovers endpoints. It does not connect to the database.
"""

from .version import __version__

from .internal_types import Jsonable, JsonableDict

from .exceptions import (
    SsrpError,
    EncodingError,
    TransportError,
    NoResponseError,
    InstanceNotFoundError,
    ParseError,
    MalformedResponseError,
  )

from .ssrp_datagram import SsrpRequest, SsrpRequestKind, encode_request, decode_request
from .ssrp_socket import SsrpSocket, ResponseMode, send_and_collect
from .instance_info import (
    InstanceInfo,
    TcpInfo,
    NamedPipeInfo,
    DacInfo,
    ViaInfo,
    ViaAddress,
    RpcInfo,
    SpxInfo,
    AdspInfo,
    BvInfo,
    parse_response,
    parse_dac_response,
  )
from .client import (
    SsrpClient,
    SsrpBrowseRequest,
    SsrpLookupRequest,
    SessionState,
    browse,
    browse_host,
    browse_instance,
    browse_instance_dac,
  )
from .util import CaseInsensitiveDict, get_local_broadcast_addresses
from .constants import (
    SSRP_PORT,
    SSRP_BROADCAST_ADDRESS,
    MAX_INSTANCE_NAME_LEN,
    DEFAULT_RESPONSE_WAIT_TIME,
    DEFAULT_INACTIVITY_TIMEOUT,
    DEFAULT_MAX_WAIT_TIME,
  )

__all__ = [
    '__version__',
    'Jsonable', 'JsonableDict',
    'SsrpError', 'EncodingError', 'TransportError', 'NoResponseError', 'InstanceNotFoundError',
    'ParseError', 'MalformedResponseError',
    'SsrpRequest', 'SsrpRequestKind', 'encode_request', 'decode_request',
    'SsrpSocket', 'ResponseMode', 'send_and_collect',
    'InstanceInfo', 'TcpInfo', 'NamedPipeInfo', 'DacInfo', 'ViaInfo', 'ViaAddress',
    'RpcInfo', 'SpxInfo', 'AdspInfo', 'BvInfo',
    'parse_response', 'parse_dac_response',
    'SsrpClient', 'SsrpBrowseRequest', 'SsrpLookupRequest', 'SessionState',
    'browse', 'browse_host', 'browse_instance', 'browse_instance_dac',
    'CaseInsensitiveDict', 'get_local_broadcast_addresses',
    'SSRP_PORT', 'SSRP_BROADCAST_ADDRESS', 'MAX_INSTANCE_NAME_LEN',
    'DEFAULT_RESPONSE_WAIT_TIME', 'DEFAULT_INACTIVITY_TIMEOUT', 'DEFAULT_MAX_WAIT_TIME',
]
