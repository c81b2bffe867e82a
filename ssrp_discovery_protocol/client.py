#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
SsrpClient -- An SSRP client that can:

  1. Broadcast or multicast an enumeration request and stream back every instance that answers
  2. Enumerate the instances on a single host
  3. Resolve the endpoints of a single named instance
  4. Resolve the dedicated admin connection (DAC) port of a single named instance
"""

from __future__ import annotations


from enum import Enum

from .internal_types import *
from .pkg_logging import logger
from .exceptions import SsrpError, NoResponseError, InstanceNotFoundError, ParseError
from .constants import (
    SSRP_PORT,
    SSRP_BROADCAST_ADDRESS,
    DEFAULT_RESPONSE_WAIT_TIME,
    DEFAULT_INACTIVITY_TIMEOUT,
    DEFAULT_MAX_WAIT_TIME,
  )
from .ssrp_datagram import SsrpRequest, encode_request
from .ssrp_socket import SsrpSocket, ResponseMode, ReceivedDatagram
from .instance_info import InstanceInfo, DacInfo, parse_response, parse_dac_response

class SessionState(Enum):
    """The lifecycle of one browse or lookup.

    IDLE -> REQUEST_SENT -> (COLLECTING | AWAITING_ONE) -> (COMPLETED | TIMED_OUT | FAILED)

    A single-response lookup that times out passes through TIMED_OUT to FAILED. A
    broadcast browse that times out simply COMPLETES, with however many instances
    arrived.
    """
    IDLE = "idle"
    REQUEST_SENT = "request_sent"
    COLLECTING = "collecting"
    AWAITING_ONE = "awaiting_one"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

TERMINAL_STATES = (SessionState.COMPLETED, SessionState.FAILED)

class SsrpBrowseRequest(
        AsyncContextManager['SsrpBrowseRequest'],
        AsyncIterable[InstanceInfo]
      ):
    """An object that manages a single broadcast/multicast enumeration request and all of the
       instances received in response, within an AsyncContextManager/AsyncIterable interface."""

    remote_addr: str
    remote_port: int
    inactivity_timeout: float
    max_wait_time: float

    state: SessionState = SessionState.IDLE

    yielded_count: int = 0
    """The number of InstanceInfo records handed out so far."""

    num_datagrams: int = 0
    """The number of response datagrams received so far."""

    num_malformed: int = 0
    """The number of received datagrams that could not be parsed and were skipped."""

    _socket: Optional[SsrpSocket] = None
    _iterated: bool = False

    def __init__(
            self,
            remote_addr: str=SSRP_BROADCAST_ADDRESS,
            remote_port: int=SSRP_PORT,
            inactivity_timeout: float=DEFAULT_INACTIVITY_TIMEOUT,
            max_wait_time: float=DEFAULT_MAX_WAIT_TIME,
          ):
        """Create an async context manager/iterable that sends an enumeration request and returns the
        instances as they arrive.

        Parameters:
            remote_addr:         The address to send the request to: a host, a subnet broadcast address,
                                    the limited broadcast address (the default), or a multicast group.
            remote_port:         The UDP port of the SQL Server Browser service. Defaults to 1434.
            inactivity_timeout:  The browse finishes when no response arrives for this many seconds.
            max_wait_time:       The browse finishes after this many seconds regardless.

        Usage:
            async with SsrpBrowseRequest("192.168.1.255") as browse_request:
                async for instance in browse_request:
                    print(instance.instance_name, instance.tcp_info)
                    # It is possible to break out of the loop early; leaving the context closes the socket.

        A browse request can be iterated only once.
        """
        self.remote_addr = remote_addr
        self.remote_port = remote_port
        self.inactivity_timeout = inactivity_timeout
        self.max_wait_time = max_wait_time

    def __str__(self) -> str:
        return f"SsrpBrowseRequest({self.remote_addr}:{self.remote_port}, state={self.state.name})"

    def __repr__(self) -> str:
        return str(self)

    def _set_state(self, state: SessionState) -> None:
        logger.debug(f"{self}: -> {state.name}")
        self.state = state

    async def __aenter__(self) -> Self:
        if self.state != SessionState.IDLE:
            raise SsrpError(f"{self} has already been started")
        self._socket = SsrpSocket(self.remote_addr, remote_port=self.remote_port)
        try:
            await self._socket.start()
            self._socket.sendto(encode_request(SsrpRequest.enumerate_all()))
        except BaseException:
            self._set_state(SessionState.FAILED)
            self.close()
            raise
        self._set_state(SessionState.REQUEST_SENT)
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        self.close()
        return False

    def close(self) -> None:
        """Closes the socket. Instances already yielded remain valid."""
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        if self.state not in TERMINAL_STATES:
            self._set_state(SessionState.COMPLETED)

    async def aclose(self) -> None:
        self.close()

    async def iter_instances(self) -> AsyncIterator[InstanceInfo]:
        """Yields each InstanceInfo in arrival order until the browse times out.

        Datagrams that cannot be parsed are logged and skipped. Duplicate records are
        not suppressed.
        """
        if self._iterated:
            raise SsrpError(f"{self} cannot be restarted; issue a new browse request")
        if self._socket is None or self.state != SessionState.REQUEST_SENT:
            raise SsrpError(f"{self} must be entered with 'async with' before iterating")
        self._iterated = True
        sock = self._socket
        self._set_state(SessionState.COLLECTING)
        try:
            async for addr, data in sock.iter_responses(
                    ResponseMode.MULTI,
                    inactivity_timeout=self.inactivity_timeout,
                    max_wait_time=self.max_wait_time,
                  ):
                self.num_datagrams += 1
                try:
                    instances = parse_response(data, addr[0])
                except ParseError as e:
                    self.num_malformed += 1
                    logger.warning(f"Skipping malformed SSRP response from {addr}: {e}")
                    continue
                for instance in instances:
                    self.yielded_count += 1
                    yield instance
        except SsrpError:
            self._set_state(SessionState.FAILED)
            self.close()
            raise
        logger.debug(f"{self}: received {self.num_datagrams} datagrams, yielded {self.yielded_count} instances")
        self.close()

    def __aiter__(self) -> AsyncIterator[InstanceInfo]:
        return self.iter_instances()

    async def collect(self) -> List[InstanceInfo]:
        """Iterates the whole browse and returns every instance received."""
        return [ instance async for instance in self.iter_instances() ]

class SsrpLookupRequest:
    """A single request sent to one host that expects exactly one response datagram."""

    remote_addr: str
    remote_port: int
    request: SsrpRequest
    response_wait_time: float

    state: SessionState = SessionState.IDLE

    def __init__(
            self,
            remote_addr: str,
            request: SsrpRequest,
            remote_port: int=SSRP_PORT,
            response_wait_time: float=DEFAULT_RESPONSE_WAIT_TIME,
          ):
        self.remote_addr = remote_addr
        self.request = request
        self.remote_port = remote_port
        self.response_wait_time = response_wait_time

    def __str__(self) -> str:
        return f"SsrpLookupRequest({self.request}, {self.remote_addr}:{self.remote_port}, state={self.state.name})"

    def __repr__(self) -> str:
        return str(self)

    def _set_state(self, state: SessionState) -> None:
        logger.debug(f"{self}: -> {state.name}")
        self.state = state

    async def run(self) -> ReceivedDatagram:
        """Sends the request and returns the (peer_address, payload) of the single response.

        Raises EncodingError if the request cannot be encoded, TransportError on socket
        failures, and NoResponseError if no response arrives within response_wait_time.
        """
        if self.state != SessionState.IDLE:
            raise SsrpError(f"{self} has already been run")
        result: Optional[ReceivedDatagram] = None
        try:
            request_data = encode_request(self.request)
            async with SsrpSocket(self.remote_addr, remote_port=self.remote_port) as sock:
                sock.sendto(request_data)
                self._set_state(SessionState.REQUEST_SENT)
                self._set_state(SessionState.AWAITING_ONE)
                try:
                    async for result in sock.iter_responses(
                            ResponseMode.SINGLE,
                            response_wait_time=self.response_wait_time,
                          ):
                        pass
                except NoResponseError:
                    self._set_state(SessionState.TIMED_OUT)
                    raise
        except BaseException:
            self._set_state(SessionState.FAILED)
            raise
        assert result is not None
        self._set_state(SessionState.COMPLETED)
        return result

class SsrpClient:
    """
    An SSRP client that can:

      1. Broadcast or multicast an enumeration request and stream back every instance that answers
      2. Enumerate the instances on a single host
      3. Resolve the endpoints of a single named instance
      4. Resolve the DAC port of a single named instance

    The client holds only timeouts and the port number; every call opens and closes its own socket,
    so a single client may be used for any number of concurrent calls.
    """

    response_wait_time: float
    """The amount of time (in seconds) to wait for the response to a host, instance or DAC lookup."""

    inactivity_timeout: float
    """A broadcast browse finishes when no response has arrived for this many seconds."""

    max_wait_time: float
    """A broadcast browse finishes after this many seconds regardless of activity."""

    remote_port: int = SSRP_PORT
    """The UDP port of the SQL Server Browser service."""

    def __init__(
            self,
            response_wait_time: float=DEFAULT_RESPONSE_WAIT_TIME,
            inactivity_timeout: float=DEFAULT_INACTIVITY_TIMEOUT,
            max_wait_time: float=DEFAULT_MAX_WAIT_TIME,
            remote_port: int=SSRP_PORT,
          ) -> None:
        self.response_wait_time = response_wait_time
        self.inactivity_timeout = inactivity_timeout
        self.max_wait_time = max_wait_time
        self.remote_port = remote_port

    def browse(
            self,
            remote_addr: str=SSRP_BROADCAST_ADDRESS,
            inactivity_timeout: Optional[float]=None,
            max_wait_time: Optional[float]=None,
          ) -> SsrpBrowseRequest:
        """Create an async context manager/iterable that sends an enumeration request to a broadcast,
           multicast or host address and returns the instances as they arrive.

        Usage:
            async with client.browse("192.168.1.255") as browse_request:
                async for instance in browse_request:
                    print(instance)
        """
        return SsrpBrowseRequest(
            remote_addr,
            remote_port=self.remote_port,
            inactivity_timeout=self.inactivity_timeout if inactivity_timeout is None else inactivity_timeout,
            max_wait_time=self.max_wait_time if max_wait_time is None else max_wait_time,
          )

    async def _lookup(
            self,
            remote_addr: str,
            request: SsrpRequest,
            response_wait_time: Optional[float]
          ) -> ReceivedDatagram:
        lookup = SsrpLookupRequest(
            remote_addr,
            request,
            remote_port=self.remote_port,
            response_wait_time=self.response_wait_time if response_wait_time is None else response_wait_time,
          )
        return await lookup.run()

    async def browse_host(self, remote_addr: str, response_wait_time: Optional[float]=None) -> List[InstanceInfo]:
        """Returns every instance on one host, as listed in the host's single response."""
        peer_addr, data = await self._lookup(remote_addr, SsrpRequest.enumerate_all(), response_wait_time)
        return parse_response(data, peer_addr[0])

    async def browse_instance(
            self,
            remote_addr: str,
            instance_name: str,
            response_wait_time: Optional[float]=None
          ) -> InstanceInfo:
        """Returns the endpoint information of one named instance on a host.

        Instance names are compared case-insensitively.

        Raises InstanceNotFoundError if the host responded without describing the instance,
        NoResponseError if it did not respond at all.
        """
        peer_addr, data = await self._lookup(remote_addr, SsrpRequest.instance_by_name(instance_name), response_wait_time)
        instances = parse_response(data, peer_addr[0])
        for instance in instances:
            if instance.instance_name.lower() == instance_name.lower():
                return instance
        raise InstanceNotFoundError(f"Instance {instance_name!r} not found on {remote_addr}")

    async def browse_instance_dac(
            self,
            remote_addr: str,
            instance_name: str,
            response_wait_time: Optional[float]=None
          ) -> DacInfo:
        """Returns the dedicated admin connection endpoint of one named instance on a host.

        Raises InstanceNotFoundError if the host responded without a DAC endpoint,
        NoResponseError if it did not respond at all.
        """
        _, data = await self._lookup(remote_addr, SsrpRequest.dac_by_name(instance_name), response_wait_time)
        try:
            return parse_dac_response(data)
        except InstanceNotFoundError as e:
            raise InstanceNotFoundError(f"No DAC endpoint for instance {instance_name!r} on {remote_addr}: {e}") from e

def browse(
        remote_addr: str=SSRP_BROADCAST_ADDRESS,
        inactivity_timeout: float=DEFAULT_INACTIVITY_TIMEOUT,
        max_wait_time: float=DEFAULT_MAX_WAIT_TIME,
        remote_port: int=SSRP_PORT,
      ) -> SsrpBrowseRequest:
    """Enumerates instances on a network. See SsrpClient.browse()."""
    return SsrpBrowseRequest(
        remote_addr,
        remote_port=remote_port,
        inactivity_timeout=inactivity_timeout,
        max_wait_time=max_wait_time,
      )

async def browse_host(
        remote_addr: str,
        response_wait_time: float=DEFAULT_RESPONSE_WAIT_TIME,
        remote_port: int=SSRP_PORT,
      ) -> List[InstanceInfo]:
    """Enumerates the instances on one host. See SsrpClient.browse_host()."""
    client = SsrpClient(response_wait_time=response_wait_time, remote_port=remote_port)
    return await client.browse_host(remote_addr)

async def browse_instance(
        remote_addr: str,
        instance_name: str,
        response_wait_time: float=DEFAULT_RESPONSE_WAIT_TIME,
        remote_port: int=SSRP_PORT,
      ) -> InstanceInfo:
    """Resolves one named instance. See SsrpClient.browse_instance()."""
    client = SsrpClient(response_wait_time=response_wait_time, remote_port=remote_port)
    return await client.browse_instance(remote_addr, instance_name)

async def browse_instance_dac(
        remote_addr: str,
        instance_name: str,
        response_wait_time: float=DEFAULT_RESPONSE_WAIT_TIME,
        remote_port: int=SSRP_PORT,
      ) -> DacInfo:
    """Resolves the DAC port of one named instance. See SsrpClient.browse_instance_dac()."""
    client = SsrpClient(response_wait_time=response_wait_time, remote_port=remote_port)
    return await client.browse_instance_dac(remote_addr, instance_name)
