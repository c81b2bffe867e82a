#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Instance records carried in SSRP responses, and the parsers that produce them.

An SVR_RESP text payload is a sequence of instance records. Each record is a
run of semicolon-delimited key/value tokens terminated by an empty token:

    ServerName;HOST;InstanceName;SQLEXPRESS;IsClustered;No;Version;15.0.2000.5;tcp;1433;np;\\\\HOST\\pipe\\sql\\query;;

Parsing is forgiving: unknown keys are skipped, a record with no
InstanceName is dropped, and an unparsable endpoint value drops only that
endpoint. Only framing/encoding problems and a record cut off mid-token fail
the whole payload.
"""

from __future__ import annotations

import struct
from ipaddress import ip_address

from .internal_types import *
from .pkg_logging import logger
from .exceptions import MalformedResponseError, InstanceNotFoundError
from .constants import SVR_RESP, DAC_PROTOCOL_VERSION, DAC_RESPONSE_SIZE
from .ssrp_datagram import decode_response_frame
from .util import CaseInsensitiveDict

class _RecordValue:
    """Common value semantics for the record classes in this module: equality,
       hashing and repr are derived from the attribute names listed in _fields."""

    _fields: Tuple[str, ...] = ()

    def _values(self) -> Tuple[Any, ...]:
        return tuple(getattr(self, name) for name in self._fields)

    def __eq__(self, other: Any) -> bool:
        if type(other) is not type(self):
            return False
        return self._values() == other._values()

    def __hash__(self) -> int:
        return hash((type(self).__name__, self._values()))

    def __str__(self) -> str:
        args = ', '.join(f"{name}={getattr(self, name)!r}" for name in self._fields)
        return f"{type(self).__name__}({args})"

    def __repr__(self) -> str:
        return str(self)

    def to_jsonable(self) -> JsonableDict:
        result: JsonableDict = {}
        for name in self._fields:
            value = getattr(self, name)
            if isinstance(value, _RecordValue):
                result[name] = value.to_jsonable()
            elif isinstance(value, tuple):
                result[name] = [x.to_jsonable() if isinstance(x, _RecordValue) else x for x in value]
            else:
                result[name] = value
        return result

class TcpInfo(_RecordValue):
    """The TCP endpoint of an instance."""
    _fields = ('port',)

    port: int
    """The TCP port the instance listens on."""

    def __init__(self, port: int):
        self.port = port

class NamedPipeInfo(_RecordValue):
    """The named pipe endpoint of an instance."""
    _fields = ('name',)

    name: str
    """The pipe name; e.g., "\\\\HOST\\pipe\\MSSQL$SQLEXPRESS\\sql\\query"."""

    def __init__(self, name: str):
        self.name = name

class DacInfo(_RecordValue):
    """The dedicated admin connection (DAC) endpoint of an instance."""
    _fields = ('port',)

    port: int
    """The TCP port the DAC endpoint listens on."""

    def __init__(self, port: int):
        self.port = port

class ViaAddress(_RecordValue):
    _fields = ('nic', 'port')

    nic: str
    port: str

    def __init__(self, nic: str, port: str):
        self.nic = nic
        self.port = port

class ViaInfo(_RecordValue):
    """The Virtual Interface Architecture endpoint of an instance."""
    _fields = ('machine_name', 'addresses')

    machine_name: str
    """The NetBIOS name of the machine on which the instance resides."""

    addresses: Tuple[ViaAddress, ...]
    """NIC/port pairs the instance listens on."""

    def __init__(self, machine_name: str, addresses: Iterable[ViaAddress]):
        self.machine_name = machine_name
        self.addresses = tuple(addresses)

class RpcInfo(_RecordValue):
    _fields = ('computer_name',)

    computer_name: str

    def __init__(self, computer_name: str):
        self.computer_name = computer_name

class SpxInfo(_RecordValue):
    _fields = ('service_name',)

    service_name: str

    def __init__(self, service_name: str):
        self.service_name = service_name

class AdspInfo(_RecordValue):
    """The AppleTalk endpoint of an instance."""
    _fields = ('object_name',)

    object_name: str

    def __init__(self, object_name: str):
        self.object_name = object_name

class BvInfo(_RecordValue):
    """The Banyan VINES endpoint of an instance."""
    _fields = ('item_name', 'group_name', 'org_name')

    item_name: str
    group_name: str
    org_name: str

    def __init__(self, item_name: str, group_name: str, org_name: str):
        self.item_name = item_name
        self.group_name = group_name
        self.org_name = org_name

class InstanceInfo(_RecordValue):
    """Endpoint information for a single SQL Server instance, as reported in an SSRP response."""

    _fields = (
        'addr', 'server_name', 'instance_name', 'is_clustered', 'version',
        'tcp_info', 'np_info', 'via_info', 'rpc_info', 'spx_info', 'adsp_info', 'bv_info',
      )

    addr: IpAddress
    """The address the response was received from. This is the transport-observed
       peer address, not anything reported by the server."""

    server_name: str
    """The host name reported by the server. May differ from the addressed host.
       Empty if the response did not include it."""

    instance_name: str
    """The name of the instance; e.g., "MSSQLSERVER" or "SQLEXPRESS". Never empty."""

    is_clustered: bool
    """True if the server reported the instance as clustered."""

    version: str
    """The version string reported by the server (not interpreted). Empty if the
       response did not include it."""

    tcp_info: Optional[TcpInfo] = None
    np_info: Optional[NamedPipeInfo] = None
    via_info: Optional[ViaInfo] = None
    rpc_info: Optional[RpcInfo] = None
    spx_info: Optional[SpxInfo] = None
    adsp_info: Optional[AdspInfo] = None
    bv_info: Optional[BvInfo] = None

    def __init__(
            self,
            addr: Union[str, IpAddress],
            instance_name: str,
            server_name: str="",
            is_clustered: bool=False,
            version: str="",
            tcp_info: Optional[TcpInfo]=None,
            np_info: Optional[NamedPipeInfo]=None,
            via_info: Optional[ViaInfo]=None,
            rpc_info: Optional[RpcInfo]=None,
            spx_info: Optional[SpxInfo]=None,
            adsp_info: Optional[AdspInfo]=None,
            bv_info: Optional[BvInfo]=None,
          ) -> None:
        if len(instance_name) == 0:
            raise ValueError("instance_name must not be empty")
        self.addr = ip_address(addr) if isinstance(addr, str) else addr
        self.server_name = server_name
        self.instance_name = instance_name
        self.is_clustered = is_clustered
        self.version = version
        self.tcp_info = tcp_info
        self.np_info = np_info
        self.via_info = via_info
        self.rpc_info = rpc_info
        self.spx_info = spx_info
        self.adsp_info = adsp_info
        self.bv_info = bv_info

    def to_jsonable(self) -> JsonableDict:
        result = super().to_jsonable()
        result['addr'] = str(self.addr)
        return result

_FIELD_VALUE_COUNTS: CaseInsensitiveDict[int] = CaseInsensitiveDict({ 'bv': 3 })
"""Number of value tokens that follow a key. Every key not listed here takes one value."""

def split_records(text: str) -> List[CaseInsensitiveDict[List[str]]]:
    """Splits an SVR_RESP text payload into raw records.

    Each record maps key (case-insensitive) to the list of value tokens that followed
    it. If a key appears more than once in a record, the first occurrence wins.
    A final record that lacks the ";;" terminator is accepted.

    Raises MalformedResponseError if the payload ends in the middle of a key/value pair.
    """
    tokens = text.split(';')
    records: List[CaseInsensitiveDict[List[str]]] = []
    fields: CaseInsensitiveDict[List[str]] = CaseInsensitiveDict()
    i = 0
    n = len(tokens)
    while i < n:
        key = tokens[i]
        if key == '':
            # end of record
            if len(fields) > 0:
                records.append(fields)
                fields = CaseInsensitiveDict()
            i += 1
            continue
        nvalues = _FIELD_VALUE_COUNTS.get(key, 1)
        if i + nvalues >= n:
            raise MalformedResponseError(f"Truncated record: key {key!r} is missing its value")
        if key not in fields:
            fields[key] = tokens[i + 1:i + 1 + nvalues]
        i += 1 + nvalues
    if len(fields) > 0:
        records.append(fields)
    return records

def _parse_port(value: str) -> Optional[int]:
    # str.isdigit() also accepts non-ASCII digits such as '²' that int() rejects
    if not (value.isascii() and value.isdigit()):
        return None
    port = int(value)
    if port > 0xFFFF:
        return None
    return port

def _parse_via(value: str) -> Optional[ViaInfo]:
    """Parses "<machine>,<nic>:<port>[,<nic>:<port>...]"."""
    machine_name, sep, remainder = value.partition(',')
    if sep == '':
        return None
    addresses: List[ViaAddress] = []
    for pair in remainder.split(','):
        nic, sep, port = pair.partition(':')
        if sep == '':
            return None
        addresses.append(ViaAddress(nic, port))
    return ViaInfo(machine_name, addresses)

def build_instance_info(
        fields: Mapping[str, List[str]],
        addr: Union[str, IpAddress],
      ) -> Optional[InstanceInfo]:
    """Builds an InstanceInfo from one raw record.

    Returns None (after logging a warning) if the record has no InstanceName.
    Endpoint values that cannot be parsed are dropped with a warning.
    """
    def first(key: str) -> Optional[str]:
        values = fields.get(key)
        return None if values is None else values[0]

    instance_name = first('InstanceName')
    if instance_name is None or instance_name == '':
        logger.warning(f"Dropping SSRP record from {addr} with no InstanceName: {dict(fields)}")
        return None

    is_clustered_str = first('IsClustered')
    is_clustered = is_clustered_str is not None and is_clustered_str.lower() == 'yes'

    tcp_info: Optional[TcpInfo] = None
    tcp_str = first('tcp')
    if tcp_str is not None:
        port = _parse_port(tcp_str)
        if port is None:
            logger.warning(f"Ignoring invalid tcp port {tcp_str!r} for instance {instance_name!r} from {addr}")
        else:
            tcp_info = TcpInfo(port)

    np_str = first('np')
    np_info = None if np_str is None else NamedPipeInfo(np_str)

    via_info: Optional[ViaInfo] = None
    via_str = first('via')
    if via_str is not None:
        via_info = _parse_via(via_str)
        if via_info is None:
            logger.warning(f"Ignoring invalid via parameters {via_str!r} for instance {instance_name!r} from {addr}")

    rpc_str = first('rpc')
    spx_str = first('spx')
    adsp_str = first('adsp')
    bv_values = fields.get('bv')

    return InstanceInfo(
        addr,
        instance_name,
        server_name=first('ServerName') or '',
        is_clustered=is_clustered,
        version=first('Version') or '',
        tcp_info=tcp_info,
        np_info=np_info,
        via_info=via_info,
        rpc_info=None if rpc_str is None else RpcInfo(rpc_str),
        spx_info=None if spx_str is None else SpxInfo(spx_str),
        adsp_info=None if adsp_str is None else AdspInfo(adsp_str),
        bv_info=None if bv_values is None else BvInfo(*bv_values),
      )

def parse_instance_records(text: str, addr: Union[str, IpAddress]) -> List[InstanceInfo]:
    """Parses an SVR_RESP text payload into InstanceInfo records, preserving order.

    Records without an InstanceName are skipped; they do not affect the records
    that follow them.

    Raises MalformedResponseError if the payload is truncated mid-record.
    """
    results: List[InstanceInfo] = []
    for fields in split_records(text):
        info = build_instance_info(fields, addr)
        if info is not None:
            results.append(info)
    return results

def parse_response(data: bytes, addr: Union[str, IpAddress]) -> List[InstanceInfo]:
    """Parses one SVR_RESP datagram received from addr into InstanceInfo records.

    Raises MalformedResponseError if the datagram is mis-framed, truncated, or its
    payload is not valid UTF-8 text.
    """
    payload = decode_response_frame(data)
    try:
        text = payload.decode('utf-8')
    except UnicodeDecodeError as e:
        raise MalformedResponseError(f"Response from {addr} is not valid UTF-8 text: {e}") from e
    return parse_instance_records(text, addr)

def parse_dac_response(data: bytes) -> DacInfo:
    """Parses the response to a CLNT_UCAST_DAC request.

    A DAC response is exactly:

        05 06 00 01 <port-lo> <port-hi>

    i.e. SVR_RESP, a size field holding the total response size (6), the DAC
    protocol version, and the little-endian DAC port.

    Raises InstanceNotFoundError if the server answered without a DAC endpoint
    (an empty or text response, or a port of 0).
    Raises MalformedResponseError if the response is mis-framed or truncated, or
    carries an unsupported protocol version.
    """
    if len(data) < 1:
        raise MalformedResponseError("Empty DAC response datagram")
    if data[0] != SVR_RESP:
        raise MalformedResponseError(f"Expected SVR_RESP ({SVR_RESP:#04x}), found {data[0]:#04x}")
    if len(data) < 3:
        raise MalformedResponseError("DAC response is too short to contain a size field")
    size = struct.unpack_from('<H', data, 1)[0]
    if size == DAC_RESPONSE_SIZE and len(data) == DAC_RESPONSE_SIZE:
        version = data[3]
        if version != DAC_PROTOCOL_VERSION:
            raise MalformedResponseError(
                f"Expected DAC protocol version {DAC_PROTOCOL_VERSION}, found {version}"
              )
        port = struct.unpack_from('<H', data, 4)[0]
        if port == 0:
            raise InstanceNotFoundError("DAC response reports no DAC port")
        return DacInfo(port)
    # Not a DAC record; if it is otherwise a well-formed response, the server
    # is telling us there is no DAC endpoint.
    decode_response_frame(data)
    raise InstanceNotFoundError("Response does not contain a DAC endpoint")
