#!/usr/bin/env python3

# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import sys
import argparse
import json
import asyncio
import logging

from ssrp_discovery_protocol.internal_types import *

from ssrp_discovery_protocol import (
    __version__ as pkg_version,
    SsrpClient,
    InstanceInfo,
    get_local_broadcast_addresses,
    SSRP_PORT,
    SSRP_BROADCAST_ADDRESS,
    DEFAULT_RESPONSE_WAIT_TIME,
    DEFAULT_INACTIVITY_TIMEOUT,
    DEFAULT_MAX_WAIT_TIME,
  )

class CmdExitError(RuntimeError):
    exit_code: int

    def __init__(self, exit_code: int, msg: Optional[str]=None):
        if msg is None:
            msg = f"Command exited with return code {exit_code}"
        super().__init__(msg)
        self.exit_code = exit_code

class ArgparseExitError(CmdExitError):
    pass

class NoExitArgumentParser(argparse.ArgumentParser):
    def exit(self, status=0, message=None):
        if message:
            self._print_message(message, sys.stderr)
        raise ArgparseExitError(status, message)

def print_json(value: Jsonable) -> None:
    print(json.dumps(value, indent=2, sort_keys=True))
    sys.stdout.flush()

class CommandHandler:
    _argv: Optional[Sequence[str]]
    _parser: argparse.ArgumentParser
    _args: argparse.Namespace
    _provide_traceback: bool = True

    def __init__(self, argv: Optional[Sequence[str]]=None):
        self._argv = argv

    def _get_client(self) -> SsrpClient:
        return SsrpClient(
            response_wait_time=self._args.wait_time,
            inactivity_timeout=self._args.inactivity_timeout,
            max_wait_time=self._args.max_wait_time,
            remote_port=self._args.port,
          )

    async def cmd_bare(self) -> int:
        print("A command is required", file=sys.stderr)
        return 1

    async def cmd_browse(self) -> int:
        remote_addrs: List[str] = list(self._args.addresses)
        if self._args.all_interfaces:
            remote_addrs.extend(x for x in get_local_broadcast_addresses() if x not in remote_addrs)
        if len(remote_addrs) == 0:
            remote_addrs = [SSRP_BROADCAST_ADDRESS]
        client = self._get_client()
        for remote_addr in remote_addrs:
            logging.debug(f"Browsing {remote_addr}")
            async with client.browse(remote_addr) as browse_request:
                async for instance in browse_request:
                    print_json(instance.to_jsonable())
        return 0

    async def cmd_host(self) -> int:
        instances: List[InstanceInfo] = await self._get_client().browse_host(self._args.address)
        print_json([ x.to_jsonable() for x in instances ])
        return 0

    async def cmd_instance(self) -> int:
        instance = await self._get_client().browse_instance(self._args.address, self._args.instance_name)
        print_json(instance.to_jsonable())
        return 0

    async def cmd_dac(self) -> int:
        dac_info = await self._get_client().browse_instance_dac(self._args.address, self._args.instance_name)
        print_json(dac_info.to_jsonable())
        return 0

    async def cmd_version(self) -> int:
        print(pkg_version)
        return 0

    async def arun(self) -> int:
        """Parses the argv given to the constructor (sys.argv[1:] if None) and runs the selected command.

        Returns:
            int: 0 on success, 1 if the command failed, 2 on a usage error.
        """
        parser = NoExitArgumentParser(prog="ssrp", description="Discover SQL Server instances with the SQL Server Resolution Protocol.")


        # ======================= Main command

        self._parser = parser
        parser.add_argument('--traceback', "--tb", action='store_true', default=False,
                            help='Display detailed exception information')
        parser.add_argument('--log-level', dest='log_level', default='warning',
                            choices=['debug', 'info', 'warning', 'error', 'critical'],
                            help='''The logging level to use. Default: warning''')
        parser.add_argument('-p', '--port', type=int, default=SSRP_PORT,
                            help=f'''The UDP port of the SQL Server Browser service. Default: {SSRP_PORT}''')
        parser.add_argument('--wait-time', dest='wait_time', type=float, default=DEFAULT_RESPONSE_WAIT_TIME,
                            help=f'''The amount of time to wait for a single-host response, in seconds. Default: {DEFAULT_RESPONSE_WAIT_TIME}''')
        parser.add_argument('--inactivity-timeout', dest='inactivity_timeout', type=float, default=DEFAULT_INACTIVITY_TIMEOUT,
                            help=f'''A browse finishes when no response arrives for this many seconds. Default: {DEFAULT_INACTIVITY_TIMEOUT}''')
        parser.add_argument('--max-wait-time', dest='max_wait_time', type=float, default=DEFAULT_MAX_WAIT_TIME,
                            help=f'''A browse finishes after this many seconds regardless. Default: {DEFAULT_MAX_WAIT_TIME}''')
        parser.set_defaults(func=self.cmd_bare)

        subparsers = parser.add_subparsers(
                            title='Commands',
                            description='Valid commands',
                            help='Additional help available with "<command-name> -h"')


        # ======================= browse

        parser_browse = subparsers.add_parser('browse', description="Enumerate instances on a network by broadcast or multicast")
        parser_browse.add_argument('addresses', nargs='*', default=[],
                            help=f'''Broadcast, multicast or host addresses to send the request to. Default: {SSRP_BROADCAST_ADDRESS}''')
        parser_browse.add_argument('-a', '--all-interfaces', dest='all_interfaces', action='store_true', default=False,
                            help='Also browse the broadcast address of every local IPv4 network')
        parser_browse.set_defaults(func=self.cmd_browse)

        # ======================= host

        parser_host = subparsers.add_parser('host', description="Enumerate the instances on one host")
        parser_host.add_argument('address', help='The host to query')
        parser_host.set_defaults(func=self.cmd_host)

        # ======================= instance

        parser_instance = subparsers.add_parser('instance', description="Resolve the endpoints of a named instance")
        parser_instance.add_argument('address', help='The host to query')
        parser_instance.add_argument('instance_name', nargs='?', default='MSSQLSERVER',
                            help='The instance name. Default: MSSQLSERVER')
        parser_instance.set_defaults(func=self.cmd_instance)

        # ======================= dac

        parser_dac = subparsers.add_parser('dac', description="Resolve the dedicated admin connection port of a named instance")
        parser_dac.add_argument('address', help='The host to query')
        parser_dac.add_argument('instance_name', nargs='?', default='MSSQLSERVER',
                            help='The instance name. Default: MSSQLSERVER')
        parser_dac.set_defaults(func=self.cmd_dac)

        # ======================= version

        parser_version = subparsers.add_parser('version',
                                description='''Display version information.''')
        parser_version.set_defaults(func=self.cmd_version)

        # =========================================================

        try:
            args = parser.parse_args(self._argv)
        except ArgparseExitError as ex:
            return ex.exit_code
        traceback: bool = args.traceback
        self._provide_traceback = traceback

        try:
            logging.basicConfig(
                level=logging.getLevelName(args.log_level.upper()),
            )
            self._args = args
            func: Callable[[], Awaitable[int]] = args.func
            logging.debug(f"Running command {func.__name__}, tb = {traceback}")
            rc = await func()
            logging.debug(f"Command {func.__name__} returned {rc}")
        except Exception as ex:
            if isinstance(ex, CmdExitError):
                rc = ex.exit_code
            else:
                rc = 1
            if rc != 0:
                if traceback:
                    raise
            print(f"ssrp: error: {ex}", file=sys.stderr)
        except BaseException as ex:
            print(f"ssrp: Unhandled exception: {ex}", file=sys.stderr)
            raise

        return rc

    def run(self) -> int:
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            rc = loop.run_until_complete(self.arun())
        finally:
            loop.close()
        return rc

def run(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = CommandHandler(argv).run()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

async def arun(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = await CommandHandler(argv).arun()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

# allow running with "python3 -m", or as a standalone script
if __name__ == "__main__":
    sys.exit(run())
