#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

import asyncio
import time
from ipaddress import IPv4Address

import pytest

from ssrp_discovery_protocol import (
    SsrpClient,
    SsrpBrowseRequest,
    SsrpLookupRequest,
    SsrpRequest,
    SessionState,
    InstanceInfo,
    TcpInfo,
    NamedPipeInfo,
    DacInfo,
    SsrpError,
    EncodingError,
    NoResponseError,
    InstanceNotFoundError,
    browse,
    browse_host,
    browse_instance,
    browse_instance_dac,
  )
from ssrp_discovery_protocol.ssrp_datagram import encode_response_frame

from conftest import text_response

SQLEXPRESS_RECORD = (
    "ServerName;HOST1;InstanceName;SQLEXPRESS;IsClustered;No;Version;15.0.2000.5;"
    "tcp;1433;np;\\\\HOST1\\pipe\\MSSQL$SQLEXPRESS\\sql\\query;;"
  )

async def test_browse_instance(browser_service):
    service = await browser_service(text_response(SQLEXPRESS_RECORD))
    client = SsrpClient(remote_port=service.port)
    info = await client.browse_instance('127.0.0.1', "SQLEXPRESS")
    assert service.requests[0][0] == b'\x04SQLEXPRESS\x00'
    assert info == InstanceInfo(
        '127.0.0.1', "SQLEXPRESS",
        server_name="HOST1",
        is_clustered=False,
        version="15.0.2000.5",
        tcp_info=TcpInfo(1433),
        np_info=NamedPipeInfo("\\\\HOST1\\pipe\\MSSQL$SQLEXPRESS\\sql\\query"),
      )

async def test_browse_instance_name_is_case_insensitive(browser_service):
    service = await browser_service(text_response(SQLEXPRESS_RECORD))
    info = await browse_instance('127.0.0.1', "sqlexpress", remote_port=service.port)
    assert info.instance_name == "SQLEXPRESS"

async def test_browse_instance_not_found(browser_service):
    service = await browser_service(text_response(""))
    client = SsrpClient(remote_port=service.port)
    with pytest.raises(InstanceNotFoundError):
        await client.browse_instance('127.0.0.1', "MISSING")

async def test_browse_instance_other_name_is_not_found(browser_service):
    service = await browser_service(text_response("ServerName;HOST1;InstanceName;OTHER;;"))
    with pytest.raises(InstanceNotFoundError):
        await browse_instance('127.0.0.1', "MISSING", remote_port=service.port)

async def test_browse_instance_no_response(closed_udp_port):
    client = SsrpClient(response_wait_time=0.2, remote_port=closed_udp_port)
    with pytest.raises(NoResponseError):
        await client.browse_instance('127.0.0.1', "SQLEXPRESS")

async def test_invalid_name_sends_nothing(browser_service):
    service = await browser_service(text_response(SQLEXPRESS_RECORD))
    client = SsrpClient(response_wait_time=0.2, remote_port=service.port)
    with pytest.raises(EncodingError):
        await client.browse_instance('127.0.0.1', "X" * 33)
    assert service.requests == []

async def test_browse_instance_dac(browser_service):
    service = await browser_service(b'\x05\x06\x00\x01\x9c\x07')
    info = await browse_instance_dac('127.0.0.1', "MSSQLSERVER", remote_port=service.port)
    assert info == DacInfo(1948)
    assert service.requests[0][0] == b'\x0f\x01MSSQLSERVER\x00'

async def test_browse_instance_dac_not_found(browser_service):
    service = await browser_service(b'\x05\x00\x00')
    client = SsrpClient(remote_port=service.port)
    with pytest.raises(InstanceNotFoundError):
        await client.browse_instance_dac('127.0.0.1', "MSSQLSERVER")

async def test_browse_host(browser_service):
    service = await browser_service(text_response(
        "ServerName;HOST1;InstanceName;MSSQLSERVER;IsClustered;No;Version;16.0.1000.6;tcp;1433;;"
        "ServerName;HOST1;InstanceName;SQLEXPRESS;IsClustered;No;Version;15.0.2000.5;tcp;50100;;"
      ))
    instances = await browse_host('127.0.0.1', remote_port=service.port)
    assert service.requests[0][0] == b'\x02'
    assert [ x.instance_name for x in instances ] == ["MSSQLSERVER", "SQLEXPRESS"]
    assert [ x.tcp_info for x in instances ] == [TcpInfo(1433), TcpInfo(50100)]
    assert all(x.addr == IPv4Address('127.0.0.1') for x in instances)

async def test_browse_host_no_response(closed_udp_port):
    with pytest.raises(NoResponseError):
        await browse_host('127.0.0.1', response_wait_time=0.2, remote_port=closed_udp_port)

async def test_browse_yields_each_response(browser_service):
    service = await browser_service(
        text_response("ServerName;HOST1;InstanceName;A;tcp;1433;;"),
        (0.05, text_response("ServerName;HOST2;InstanceName;B;tcp;1434;;")),
      )
    start = time.monotonic()
    async with browse('127.0.0.1', inactivity_timeout=0.3, max_wait_time=5.0, remote_port=service.port) as request:
        instances = [ x async for x in request ]
    assert time.monotonic() - start < 2.0
    assert [ (x.server_name, x.instance_name) for x in instances ] == [("HOST1", "A"), ("HOST2", "B")]
    assert request.yielded_count == 2
    assert request.state == SessionState.COMPLETED

async def test_browse_with_no_responses_completes_empty(closed_udp_port):
    client = SsrpClient(inactivity_timeout=0.2, max_wait_time=1.0, remote_port=closed_udp_port)
    async with client.browse('127.0.0.1') as request:
        instances = await request.collect()
    assert instances == []
    assert request.state == SessionState.COMPLETED

async def test_browse_skips_malformed_datagrams(browser_service):
    service = await browser_service(
        b'\x06garbage',
        b'\x05\x40\x00InstanceName;CUT',
        encode_response_frame(b'InstanceName;\xff\xfe;;'),
        text_response("ServerName;HOST1;InstanceName;A;;"),
      )
    async with browse('127.0.0.1', inactivity_timeout=0.3, remote_port=service.port) as request:
        instances = await request.collect()
    assert [ x.instance_name for x in instances ] == ["A"]
    assert request.num_datagrams == 4
    assert request.num_malformed == 3
    assert request.state == SessionState.COMPLETED

async def test_browse_survives_bad_tcp_port(browser_service):
    service = await browser_service(
        text_response("InstanceName;BAD;tcp;²;;"),
        text_response("InstanceName;GOOD;tcp;1433;;"),
      )
    async with browse('127.0.0.1', inactivity_timeout=0.3, remote_port=service.port) as request:
        instances = await request.collect()
    assert [ (x.instance_name, x.tcp_info) for x in instances ] == [("BAD", None), ("GOOD", TcpInfo(1433))]
    assert request.num_malformed == 0

async def test_browse_max_wait_time_counts_from_send(browser_service):
    replies = [ (0.05 * i, text_response(f"InstanceName;I{i};;")) for i in range(40) ]
    service = await browser_service(*replies)
    async with browse('127.0.0.1', inactivity_timeout=0.5, max_wait_time=0.6, remote_port=service.port) as request:
        entered = time.monotonic()
        await asyncio.sleep(0.4)
        await request.collect()
        elapsed = time.monotonic() - entered
    assert elapsed < 0.9

async def test_browse_max_wait_time(browser_service):
    replies = [ (0.05 * i, text_response(f"InstanceName;I{i};;")) for i in range(40) ]
    service = await browser_service(*replies)
    start = time.monotonic()
    async with browse('127.0.0.1', inactivity_timeout=0.5, max_wait_time=0.5, remote_port=service.port) as request:
        instances = await request.collect()
    assert time.monotonic() - start < 1.0
    assert 0 < len(instances) < 40

async def test_browse_early_exit_closes_socket(browser_service):
    service = await browser_service(
        text_response("InstanceName;A;;"),
        text_response("InstanceName;B;;"),
      )
    async with browse('127.0.0.1', remote_port=service.port) as request:
        async for instance in request:
            assert instance.instance_name == "A"
            break
        assert request.state == SessionState.COLLECTING
    assert request.state == SessionState.COMPLETED
    assert request._socket is None

async def test_browse_cannot_be_restarted(browser_service):
    service = await browser_service(text_response("InstanceName;A;;"))
    async with browse('127.0.0.1', inactivity_timeout=0.2, remote_port=service.port) as request:
        await request.collect()
        with pytest.raises(SsrpError):
            await request.collect()
    with pytest.raises(SsrpError):
        async with request:
            pass

async def test_browse_must_be_entered():
    request = SsrpBrowseRequest('127.0.0.1')
    with pytest.raises(SsrpError):
        await request.collect()
    assert request.state == SessionState.IDLE

async def test_lookup_states(browser_service, closed_udp_port):
    service = await browser_service(text_response(SQLEXPRESS_RECORD))
    lookup = SsrpLookupRequest('127.0.0.1', SsrpRequest.instance_by_name("SQLEXPRESS"), remote_port=service.port)
    assert lookup.state == SessionState.IDLE
    peer_addr, data = await lookup.run()
    assert lookup.state == SessionState.COMPLETED
    assert peer_addr == ('127.0.0.1', service.port)
    assert data == text_response(SQLEXPRESS_RECORD)
    with pytest.raises(SsrpError):
        await lookup.run()

    failed = SsrpLookupRequest(
        '127.0.0.1', SsrpRequest.enumerate_all(), remote_port=closed_udp_port, response_wait_time=0.2
      )
    with pytest.raises(NoResponseError):
        await failed.run()
    assert failed.state == SessionState.FAILED

async def test_lookup_timeout_passes_through_timed_out(closed_udp_port, monkeypatch):
    states = []
    original_set_state = SsrpLookupRequest._set_state

    def record_state(self, state):
        states.append(state)
        original_set_state(self, state)

    monkeypatch.setattr(SsrpLookupRequest, '_set_state', record_state)
    lookup = SsrpLookupRequest(
        '127.0.0.1', SsrpRequest.instance_by_name("A"), remote_port=closed_udp_port, response_wait_time=0.2
      )
    with pytest.raises(NoResponseError):
        await lookup.run()
    assert states == [
        SessionState.REQUEST_SENT,
        SessionState.AWAITING_ONE,
        SessionState.TIMED_OUT,
        SessionState.FAILED,
      ]

async def test_lookup_returns_first_of_several_responses(browser_service):
    service = await browser_service(text_response("InstanceName;FIRST;;"), text_response("InstanceName;SECOND;;"))
    lookup = SsrpLookupRequest('127.0.0.1', SsrpRequest.enumerate_all(), remote_port=service.port)
    _, data = await lookup.run()
    assert data == text_response("InstanceName;FIRST;;")
    assert lookup.state == SessionState.COMPLETED
