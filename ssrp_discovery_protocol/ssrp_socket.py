#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
SsrpSocket -- A single-use UDP socket for one SSRP exchange that can:

  1. Bind to an ephemeral local port, with broadcast enabled if the destination is a broadcast address
  2. Send one request datagram to a SQL Server Browser service (unicast, broadcast or multicast)
  3. Queue response datagrams as they arrive and hand them out with a bounded wait

  Responses are collected in one of two modes:

    SINGLE -- the first datagram is the answer; timing out with none is a NoResponseError.
    MULTI  -- keep collecting until no datagram arrives within the inactivity timeout, or
              the hard upper bound on the total wait is reached.
"""

from __future__ import annotations


import asyncio
import socket
import time
from enum import Enum

from .internal_types import *
from .pkg_logging import logger
from .exceptions import TransportError, NoResponseError
from .constants import (
    SSRP_PORT,
    DEFAULT_RESPONSE_WAIT_TIME,
    DEFAULT_INACTIVITY_TIMEOUT,
    DEFAULT_MAX_WAIT_TIME,
  )
from .util import is_broadcast_address

MAX_QUEUE_SIZE = 1000

ReceivedDatagram = Tuple[HostAndPort, bytes]
"""A (peer_address, payload) pair for one received datagram."""

class ResponseMode(Enum):
    """How many responses an exchange should wait for."""
    SINGLE = 1
    MULTI = 2

class _SsrpSocketProtocol(asyncio.DatagramProtocol):
    """An adapter between the asyncio transport and SsrpSocket."""
    ssrp_socket: SsrpSocket

    def __init__(self, ssrp_socket: SsrpSocket):
        self.ssrp_socket = ssrp_socket

    def connection_made(self, transport: asyncio.BaseTransport):
        """Called when a connection is made."""
        # asyncio datagram transports do not inherit from asyncio.DatagramTransport
        self.ssrp_socket.connection_made(transport) # type: ignore[arg-type]

    def datagram_received(self, data: bytes, addr: Tuple[Any, ...]):
        """Called when some datagram is received."""
        self.ssrp_socket.datagram_received((addr[0], addr[1]), data)

    def error_received(self, exc: Exception):
        """Called when a send or receive operation raises an OSError.

        (Other than BlockingIOError or InterruptedError.)
        """
        self.ssrp_socket.error_received(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        """Called when the connection is lost or closed."""
        self.ssrp_socket.connection_lost(exc)

class SsrpSocket(AsyncContextManager['SsrpSocket']):
    """
    A single-use UDP socket for one SSRP exchange.

    Usage:
        async with SsrpSocket("192.168.1.10") as sock:
            sock.sendto(request_data)
            async for peer_addr, data in sock.iter_responses(ResponseMode.MULTI):
                ...

    Leaving the context closes the socket immediately; no further datagrams are received.
    """

    remote_addr: str
    """The host name or IP address the request is sent to."""

    remote_port: int
    """The UDP port the request is sent to. Normally SSRP_PORT (1434)."""

    enable_broadcast: Optional[bool]
    """Whether SO_BROADCAST is set on the socket. If None when the socket is started,
       it is enabled only if the resolved destination is a broadcast address."""

    destination: Optional[Tuple[Any, ...]] = None
    """The resolved socket address of the destination; set by start()."""

    sock: Optional[socket.socket] = None
    transport: Optional[asyncio.DatagramTransport] = None

    queue: asyncio.Queue[Optional[ReceivedDatagram]]

    eos: bool = False
    """True once the transport has been closed or has failed."""

    eos_exc: Optional[Exception] = None
    """The transport failure that ended the stream, if any."""

    num_received: int = 0
    """The number of datagrams received on this socket."""

    send_time: Optional[float] = None
    """The time.monotonic() at which the request was sent; None until sendto() succeeds."""

    def __init__(
            self,
            remote_addr: str,
            remote_port: int=SSRP_PORT,
            enable_broadcast: Optional[bool]=None,
            max_queue_size: int=MAX_QUEUE_SIZE
          ) -> None:
        self.remote_addr = remote_addr
        self.remote_port = remote_port
        self.enable_broadcast = enable_broadcast
        self.queue = asyncio.Queue(max_queue_size)

    def __str__(self) -> str:
        return f"SsrpSocket({self.remote_addr}:{self.remote_port})"

    def __repr__(self) -> str:
        return str(self)

    async def start(self) -> None:
        """Resolves the destination, then creates and binds the socket.

        Raises TransportError on failure.
        """
        loop = asyncio.get_running_loop()
        try:
            addrinfos = await loop.getaddrinfo(self.remote_addr, self.remote_port, type=socket.SOCK_DGRAM)
        except OSError as e:
            raise TransportError(f"Unable to resolve {self.remote_addr}: {e}") from e
        if len(addrinfos) == 0:
            raise TransportError(f"Unable to resolve {self.remote_addr}")
        address_family = addrinfos[0][0]
        self.destination = addrinfos[0][4]
        assert self.destination is not None
        is_ipv6 = address_family == socket.AF_INET6
        if self.enable_broadcast is None:
            self.enable_broadcast = not is_ipv6 and is_broadcast_address(self.destination[0])
        try:
            sock = socket.socket(address_family, socket.SOCK_DGRAM)
            self.sock = sock
            if self.enable_broadcast:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind(('::' if is_ipv6 else '', 0))
            untyped_transport, _ = await loop.create_datagram_endpoint(
                lambda: _SsrpSocketProtocol(self),
                sock=sock
              )
            # asyncio datagram transports do not inherit from asyncio.DatagramTransport
            self.transport = untyped_transport # type: ignore[assignment]
        except OSError as e:
            self.close()
            raise TransportError(f"Unable to open UDP socket for {self.remote_addr}:{self.remote_port}: {e}") from e
        logger.debug(f"Opened {self} on {sock.getsockname()}, broadcast={self.enable_broadcast}")

    def close(self) -> None:
        """Closes the socket. Safe to call more than once."""
        if self.transport is not None:
            transport = self.transport
            self.transport = None
            transport.close()
        elif self.sock is not None:
            self.sock.close()
        self.sock = None
        self._set_eos(None)

    def sendto(self, data: bytes) -> None:
        """Sends one datagram to the destination.

        Raises TransportError if the socket is not open or the send fails.
        """
        if self.transport is None or self.destination is None:
            raise TransportError(f"{self} is not open")
        logger.debug(f"Sending request via {self} to {self.destination}: {data!r}")
        try:
            self.transport.sendto(data, self.destination)
        except OSError as e:
            raise TransportError(f"Sending to {self.remote_addr}:{self.remote_port} failed: {e}") from e
        self.send_time = time.monotonic()

    def connection_made(self, transport: asyncio.DatagramTransport) -> None:
        logger.debug(f"Connection made: {self}")
        self.transport = transport

    def datagram_received(self, addr: HostAndPort, data: bytes) -> None:
        if self.eos:
            return
        self.num_received += 1
        logger.debug(f"Received datagram on {self} from {addr}: {data!r}")
        try:
            self.queue.put_nowait((addr, data))
        except asyncio.QueueFull:
            logger.warning(f"Queue full, dropping datagram from {addr} on {self}")

    def error_received(self, exc: Exception) -> None:
        if isinstance(exc, ConnectionRefusedError):
            # ICMP port unreachable; the peer is simply not answering
            logger.info(f"Ignoring {exc} on {self}")
            return
        logger.info(f"Error received from transport on {self}: {exc}")
        self._set_eos(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        logger.debug(f"Connection to transport lost on {self}, exc={exc}")
        self._set_eos(exc)

    def _set_eos(self, exc: Optional[Exception]) -> None:
        if not self.eos:
            self.eos = True
            self.eos_exc = exc
            try:
                # wake up any waiting tasks
                self.queue.put_nowait(None)
            except asyncio.QueueFull:
                # queue is full so waiters will wake up soon
                pass

    def _check_eos(self) -> None:
        if self.eos_exc is not None:
            raise TransportError(f"Receiving on {self} failed: {self.eos_exc}") from self.eos_exc

    async def receive(self, timeout: float) -> Optional[ReceivedDatagram]:
        """Waits up to timeout seconds for the next datagram.

        Returns None if the wait times out or the socket has been closed.
        Raises TransportError if the transport failed.
        """
        try:
            result = self.queue.get_nowait()
        except asyncio.QueueEmpty:
            if self.eos:
                self._check_eos()
                return None
            if timeout <= 0.0:
                return None
            try:
                result = await asyncio.wait_for(self.queue.get(), timeout)
            except asyncio.TimeoutError:
                return None
        if result is None:
            self._check_eos()
            return None
        return result

    async def iter_responses(
            self,
            mode: ResponseMode,
            response_wait_time: float=DEFAULT_RESPONSE_WAIT_TIME,
            inactivity_timeout: float=DEFAULT_INACTIVITY_TIMEOUT,
            max_wait_time: float=DEFAULT_MAX_WAIT_TIME,
          ) -> AsyncIterator[ReceivedDatagram]:
        """Yields received datagrams until the mode's exit condition is met.

        SINGLE: yields the first datagram received within response_wait_time. Raises
                NoResponseError if none arrives.
        MULTI:  yields datagrams until inactivity_timeout passes without a new one, or
                max_wait_time has elapsed since the request was sent (since the call, if
                nothing was sent), whichever is sooner. Receiving nothing at all is not
                an error.
        """
        if mode == ResponseMode.SINGLE:
            result = await self.receive(response_wait_time)
            if result is None:
                raise NoResponseError(
                    f"No response from {self.remote_addr}:{self.remote_port} within {response_wait_time} seconds"
                  )
            yield result
            return

        start_time = time.monotonic() if self.send_time is None else self.send_time
        end_time = start_time + max_wait_time
        while True:
            remaining_time = end_time - time.monotonic()
            if remaining_time <= 0.0:
                logger.debug(f"Maximum wait time of {max_wait_time} seconds reached on {self}")
                break
            result = await self.receive(min(inactivity_timeout, remaining_time))
            if result is None:
                break
            yield result

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        self.close()
        return False

async def send_and_collect(
        remote_addr: str,
        request_data: bytes,
        mode: ResponseMode,
        remote_port: int=SSRP_PORT,
        response_wait_time: float=DEFAULT_RESPONSE_WAIT_TIME,
        inactivity_timeout: float=DEFAULT_INACTIVITY_TIMEOUT,
        max_wait_time: float=DEFAULT_MAX_WAIT_TIME,
        enable_broadcast: Optional[bool]=None,
      ) -> List[ReceivedDatagram]:
    """Sends one request datagram and returns the (peer_address, payload) pairs received.

    A socket is opened for the call and closed before returning.

    Raises NoResponseError in SINGLE mode if nothing arrives, and TransportError on
    socket failures. In MULTI mode an empty list is a normal result.
    """
    async with SsrpSocket(remote_addr, remote_port=remote_port, enable_broadcast=enable_broadcast) as sock:
        sock.sendto(request_data)
        return [
            received async for received in sock.iter_responses(
                mode,
                response_wait_time=response_wait_time,
                inactivity_timeout=inactivity_timeout,
                max_wait_time=max_wait_time,
              )
          ]
