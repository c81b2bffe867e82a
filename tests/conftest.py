#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Shared fixtures: an in-process SQL Server Browser stand-in listening on 127.0.0.1."""

from __future__ import annotations

import asyncio
import socket

import pytest

from ssrp_discovery_protocol.internal_types import *
from ssrp_discovery_protocol.ssrp_datagram import encode_response_frame

def text_response(text: str) -> bytes:
    """Frames an SVR_RESP text payload."""
    return encode_response_frame(text.encode('utf-8'))

class MockBrowserService(asyncio.DatagramProtocol):
    """Answers every request datagram with a fixed list of (delay_seconds, datagram) replies."""

    replies: List[Tuple[float, bytes]]
    requests: List[Tuple[bytes, HostAndPort]]
    transport: Optional[asyncio.DatagramTransport] = None
    port: int = 0

    def __init__(self, replies: Iterable[Union[bytes, Tuple[float, bytes]]]):
        self.replies = [ r if isinstance(r, tuple) else (0.0, r) for r in replies ]
        self.requests = []

    def connection_made(self, transport: asyncio.BaseTransport):
        self.transport = transport # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        self.requests.append((data, addr))
        loop = asyncio.get_running_loop()
        for delay, reply in self.replies:
            if delay <= 0.0:
                self._send(reply, addr)
            else:
                loop.call_later(delay, self._send, reply, addr)

    def _send(self, reply: bytes, addr: Tuple[str, int]) -> None:
        if self.transport is not None and not self.transport.is_closing():
            self.transport.sendto(reply, addr)

    def close(self) -> None:
        if self.transport is not None:
            self.transport.close()
            self.transport = None

@pytest.fixture
async def browser_service():
    """Returns a coroutine function that starts a MockBrowserService on 127.0.0.1 with the given replies."""
    services: List[MockBrowserService] = []

    async def start(*replies: Union[bytes, Tuple[float, bytes]]) -> MockBrowserService:
        loop = asyncio.get_running_loop()
        service = MockBrowserService(replies)
        transport, _ = await loop.create_datagram_endpoint(lambda: service, local_addr=('127.0.0.1', 0))
        service.port = transport.get_extra_info('sockname')[1]
        services.append(service)
        return service

    yield start
    for service in services:
        service.close()

@pytest.fixture
def closed_udp_port() -> int:
    """A UDP port on 127.0.0.1 that nothing is listening on."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.bind(('127.0.0.1', 0))
        port = sock.getsockname()[1]
    finally:
        sock.close()
    return port
