#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Simple utility functions used by this package
"""

from __future__ import annotations

import netifaces
import socket
from ipaddress import IPv4Address, ip_address

from .internal_types import *

from requests.structures import CaseInsensitiveDict

def is_broadcast_address(addr: str) -> bool:
    """Returns True if addr is the IPv4 limited broadcast address, or the directed
       broadcast address of one of the local IPv4 networks."""
    try:
        ip = ip_address(addr)
    except ValueError:
        return False
    if not isinstance(ip, IPv4Address):
        return False
    if ip == IPv4Address('255.255.255.255'):
        return True
    return addr in get_local_broadcast_addresses(include_loopback=True)

def get_default_ip_gateway(address_family: socket.AddressFamily | int=socket.AF_INET) -> Tuple[Optional[str], Optional[str]]:
    """Returns the (gateway_ip_address: str, gateway_interface_name: str) for the default IP gateway in the
       requested family, if any.
       returns (None, None) if there is no default gateway in the requested family."""
    assert int(address_family) in (int(socket.AF_INET), int(socket.AF_INET6))
    netiface_family = netifaces.AF_INET if int(address_family) == int(socket.AF_INET) else netifaces.AF_INET6
    gws = netifaces.gateways()
    if "default" in gws:
        default_gateway_infos = gws["default"]
        if netiface_family in default_gateway_infos:
            gw_ip, gw_interface_name = default_gateway_infos[netiface_family][:2]
            return (gw_ip, gw_interface_name)
    return (None, None)

def get_local_broadcast_addresses_and_interfaces(include_loopback: bool=False) -> List[Tuple[str, str]]:
    """Returns a list of Tuple[broadcast_address: str, interface_name: str] for the IPv4 networks
       attached to the local host. Each broadcast address appears once. The result is sorted in a way
       that attempts to place the "preferred" network first in the list, according to the following scheme:
           1. Networks on the default gateway interface precede all other networks.
           2. Non-loopback networks precede loopback networks.
           3. Networks whose broadcast address begins with 172. follow other networks. This is a hack to
              deprioritize local docker networks.
    """
    result_with_priority: List[Tuple[int, str, str]] = []
    seen: Set[str] = set()
    _, default_gateway_ifname = get_default_ip_gateway(socket.AF_INET)
    for ifname in netifaces.interfaces():
        ifinfo = netifaces.ifaddresses(ifname)
        for addrinfo in ifinfo.get(netifaces.AF_INET, []):
            broadcast = addrinfo.get('broadcast')
            ip_str = addrinfo.get('addr')
            is_loopback = ip_str is not None and IPv4Address(ip_str).is_loopback
            if is_loopback and not include_loopback:
                continue
            if broadcast is None or broadcast in seen:
                continue
            seen.add(broadcast)
            if ifname == default_gateway_ifname:
                priority = 0
            elif is_loopback:
                priority = 3
            elif broadcast.startswith('172.'):
                priority = 2
            else:
                priority = 1
            result_with_priority.append((priority, broadcast, ifname))
    return [ (bcast, ifname) for _, bcast, ifname in sorted(result_with_priority)]

def get_local_broadcast_addresses(include_loopback: bool=False) -> List[str]:
    """Returns a List[broadcast_address: str] for the IPv4 networks attached to the local host,
       with the preferred network first. See get_local_broadcast_addresses_and_interfaces()."""
    return [ bcast for bcast, _ in get_local_broadcast_addresses_and_interfaces(include_loopback=include_loopback)]
