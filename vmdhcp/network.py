"""Address helpers for IP pools: CIDR loading, pool info and range checks."""

import ipaddress
import json
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from vmdhcp.util import (
    EXCLUDED_MARK,
    NODE_ARGS_ANNOTATION_KEY,
    RESERVED_MARK,
    SERVICE_CIDR_FLAG,
)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass
class PoolInfo:
    """Parsed addresses of an IP pool; unset addresses are None."""

    ip_net: IPNetwork
    network_ip_addr: IPAddress
    broadcast_ip_addr: IPAddress
    start_ip_addr: Optional[IPAddress] = None
    end_ip_addr: Optional[IPAddress] = None
    server_ip_addr: Optional[IPAddress] = None
    router_ip_addr: Optional[IPAddress] = None


def _parse_addr(text: str) -> IPAddress:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        pass
    reason = "unable to parse IP"
    fields = text.split(".")
    if ":" not in text and all(f.isdigit() for f in fields) and any(int(f) > 255 for f in fields):
        reason = "IPv4 field has value >255"
    raise ValueError(f'ParseAddr("{text}"): {reason}')


def _addr_key(addr: IPAddress) -> Tuple[int, int]:
    return addr.version, int(addr)


def get_service_cidr_from_node(node_name: str, annotations: Optional[Dict[str, str]]) -> str:
    """Return the service CIDR from a node's node-args annotation."""
    if annotations is None:
        raise ValueError(f"service CIDR not found for node {node_name}")
    if NODE_ARGS_ANNOTATION_KEY not in annotations:
        raise ValueError(f"annotation {NODE_ARGS_ANNOTATION_KEY} not found for node {node_name}")

    args = json.loads(annotations[NODE_ARGS_ANNOTATION_KEY])
    try:
        index = args.index(SERVICE_CIDR_FLAG) + 1
    except ValueError:
        index = 0
    if index == 0 or index >= len(args):
        raise ValueError(f"serviceCIDR not found for node {node_name}")
    return args[index]


def load_cidr(cidr: str) -> Tuple[IPNetwork, IPAddress, IPAddress]:
    """Parse a CIDR into (network, network address, broadcast address)."""
    address, sep, prefix = cidr.partition("/")
    if not sep or not prefix.isdigit():
        raise ValueError(f"invalid CIDR address: {cidr}")
    try:
        net = ipaddress.ip_network(f"{address}/{int(prefix)}", strict=False)
    except ValueError:
        raise ValueError(f"invalid CIDR address: {cidr}") from None
    return net, net.network_address, net.broadcast_address


def load_pool(cidr: str, start: str, end: str, server_ip: str, router: str) -> PoolInfo:
    """Load the CIDR and the optional pool addresses; empty strings stay unset."""
    ip_net, network, broadcast = load_cidr(cidr)
    info = PoolInfo(ip_net=ip_net, network_ip_addr=network, broadcast_ip_addr=broadcast)
    if start:
        info.start_ip_addr = _parse_addr(start)
    if end:
        info.end_ip_addr = _parse_addr(end)
    if server_ip:
        info.server_ip_addr = _parse_addr(server_ip)
    if router:
        info.router_ip_addr = _parse_addr(router)
    return info


def load_allocated(
    allocated: Dict[str, str],
) -> Tuple[List[IPAddress], List[IPAddress], List[IPAddress]]:
    """Split an allocation map into allocated, excluded and reserved addresses."""
    allocated_list: List[IPAddress] = []
    excluded_list: List[IPAddress] = []
    reserved_list: List[IPAddress] = []
    for ip, value in allocated.items():
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            continue
        if value == EXCLUDED_MARK:
            excluded_list.append(addr)
        elif value == RESERVED_MARK:
            reserved_list.append(addr)
        else:
            allocated_list.append(addr)
    return allocated_list, excluded_list, reserved_list


def is_ip_addr_in_list(ip_addr: IPAddress, ip_addr_list) -> bool:
    """Return True if the address is in the list."""
    return ip_addr in ip_addr_list


def is_ip_in_between_of(ip: str, ip1: str, ip2: str) -> bool:
    """Return True if ip lies within [ip1, ip2]; False if any is malformed."""
    try:
        addr, low, high = (ipaddress.ip_address(x) for x in (ip, ip1, ip2))
    except ValueError:
        return False
    return _addr_key(low) <= _addr_key(addr) <= _addr_key(high)