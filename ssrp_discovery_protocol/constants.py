#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Constants used by this package"""

SSRP_PORT = 1434
"""The UDP port on which the SQL Server Browser service listens."""

SSRP_BROADCAST_ADDRESS = "255.255.255.255"
"""The IPv4 limited broadcast address; the default target for network-wide enumeration."""

CLNT_BCAST_EX = 0x02
"""Request opcode: enumerate all instances on a host or network."""

CLNT_UCAST_INST = 0x04
"""Request opcode: look up a single named instance."""

CLNT_UCAST_DAC = 0x0F
"""Request opcode: look up the dedicated admin connection (DAC) port of a named instance."""

SVR_RESP = 0x05
"""The leading byte of every server response."""

DAC_PROTOCOL_VERSION = 0x01
"""The protocol version byte carried by CLNT_UCAST_DAC requests and DAC responses."""

DAC_RESPONSE_SIZE = 6
"""The total size in bytes of a DAC response, which is also the value of its size field."""

MAX_INSTANCE_NAME_LEN = 32
"""The maximum length of an instance name in a request."""


DEFAULT_RESPONSE_WAIT_TIME = 1.0
"""The default amount of time (in seconds) to wait for the single response to a host, instance or DAC lookup."""

DEFAULT_INACTIVITY_TIMEOUT = 1.0
"""The default amount of time (in seconds) a broadcast browse waits for another response before finishing."""

DEFAULT_MAX_WAIT_TIME = 5.0
"""The default upper bound (in seconds) on the total duration of a broadcast browse."""
