#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

import asyncio
import socket
import time

import pytest

from ssrp_discovery_protocol.exceptions import TransportError, NoResponseError
from ssrp_discovery_protocol.ssrp_socket import SsrpSocket, ResponseMode, send_and_collect

from conftest import text_response

async def test_single_mode_returns_first_response(browser_service):
    service = await browser_service(text_response("InstanceName;A;;"), text_response("InstanceName;B;;"))
    results = await send_and_collect('127.0.0.1', b'\x02', ResponseMode.SINGLE, remote_port=service.port)
    assert len(results) == 1
    peer_addr, data = results[0]
    assert peer_addr == ('127.0.0.1', service.port)
    assert data == text_response("InstanceName;A;;")
    assert service.requests[0][0] == b'\x02'

async def test_multi_mode_collects_until_inactive(browser_service):
    service = await browser_service(b'\x05\x00\x00', (0.1, b'\x05\x00\x00'), (0.2, b'\x05\x00\x00'))
    results = await send_and_collect(
        '127.0.0.1', b'\x02', ResponseMode.MULTI,
        remote_port=service.port, inactivity_timeout=0.5, max_wait_time=5.0
      )
    assert len(results) == 3

async def test_multi_mode_with_no_responses_is_empty(closed_udp_port):
    start = time.monotonic()
    results = await send_and_collect(
        '127.0.0.1', b'\x02', ResponseMode.MULTI,
        remote_port=closed_udp_port, inactivity_timeout=0.2, max_wait_time=1.0
      )
    assert results == []
    assert time.monotonic() - start < 1.0

async def test_single_mode_with_no_response_raises(closed_udp_port):
    with pytest.raises(NoResponseError):
        await send_and_collect(
            '127.0.0.1', b'\x04A\x00', ResponseMode.SINGLE,
            remote_port=closed_udp_port, response_wait_time=0.2
          )

async def test_max_wait_time_bounds_collection(browser_service):
    replies = [ (0.05 * i, b'\x05\x00\x00') for i in range(40) ]
    service = await browser_service(*replies)
    start = time.monotonic()
    results = await send_and_collect(
        '127.0.0.1', b'\x02', ResponseMode.MULTI,
        remote_port=service.port, inactivity_timeout=0.5, max_wait_time=0.5
      )
    elapsed = time.monotonic() - start
    assert elapsed < 1.0
    assert 0 < len(results) < 40

async def test_resolve_failure_is_transport_error(monkeypatch):
    loop = asyncio.get_running_loop()

    async def fail_getaddrinfo(*args, **kwargs):
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

    monkeypatch.setattr(loop, 'getaddrinfo', fail_getaddrinfo)
    with pytest.raises(TransportError):
        await send_and_collect('no-such-host.invalid', b'\x02', ResponseMode.MULTI)

async def test_sendto_before_start_is_transport_error():
    sock = SsrpSocket('127.0.0.1')
    with pytest.raises(TransportError):
        sock.sendto(b'\x02')

async def test_transport_error_ends_receive(closed_udp_port):
    async with SsrpSocket('127.0.0.1', remote_port=closed_udp_port) as sock:
        sock.error_received(OSError(101, "Network is unreachable"))
        with pytest.raises(TransportError):
            await sock.receive(1.0)

async def test_connection_refused_is_ignored(closed_udp_port):
    async with SsrpSocket('127.0.0.1', remote_port=closed_udp_port) as sock:
        sock.error_received(ConnectionRefusedError())
        assert not sock.eos
        assert await sock.receive(0.1) is None

async def test_close_is_idempotent_and_ends_stream(closed_udp_port):
    sock = SsrpSocket('127.0.0.1', remote_port=closed_udp_port)
    await sock.start()
    assert sock.enable_broadcast is False
    sock.close()
    sock.close()
    assert sock.eos
    assert await sock.receive(1.0) is None

async def test_datagrams_after_close_are_dropped(closed_udp_port):
    sock = SsrpSocket('127.0.0.1', remote_port=closed_udp_port)
    await sock.start()
    sock.close()
    sock.datagram_received(('127.0.0.1', 1434), b'\x05\x00\x00')
    assert sock.num_received == 0

async def test_broadcast_destination_enables_broadcast():
    async with SsrpSocket('255.255.255.255') as sock:
        assert sock.enable_broadcast is True
        assert sock.sock is not None
        assert sock.sock.getsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST) != 0
