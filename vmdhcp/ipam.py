"""In-memory IP address management for IPv4 subnets."""

import ipaddress
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Set

from vmdhcp.network import load_cidr

log = logging.getLogger(__name__)

_ZERO = "0.0.0.0"


class IPAMError(ValueError):
    """Raised when an IPAM operation cannot be carried out."""


@dataclass
class _Subnet:
    network: ipaddress.IPv4Network
    start: int
    end: int
    broadcast: ipaddress.IPv4Address
    allocated: Set[int] = field(default_factory=set)
    revoked: Set[int] = field(default_factory=set)

    def lookup(self, key: str) -> Optional[int]:
        """Return the integer address for a tracked key, or None."""
        try:
            addr = ipaddress.IPv4Address(key)
        except ValueError:
            return None
        if str(addr) != key:
            return None
        value = int(addr)
        if self.start <= value <= self.end and value not in self.revoked:
            return value
        return None

    def tracked(self) -> Iterator[int]:
        return (x for x in range(self.start, self.end + 1) if x not in self.revoked)

    @property
    def total(self) -> int:
        return self.end - self.start + 1 - len(self.revoked)


def _parse_ip(text: str):
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


class IPAllocator:
    """Tracks which addresses of named subnets are allocated."""

    def __init__(self) -> None:
        self._ipam: Dict[str, _Subnet] = {}
        self._lock = threading.RLock()

    def _subnet(self, name: str) -> _Subnet:
        try:
            return self._ipam[name]
        except KeyError:
            raise IPAMError(f"network {name} does not exist") from None

    def new_ip_subnet(self, name: str, cidr: str, start: str, end: str) -> None:
        """Register a subnet whose pool spans start to end inclusive."""
        net, _, broadcast = load_cidr(cidr)
        if net.version != 4:
            raise IPAMError(f"cidr {cidr} is not an IPv4 network")

        start_ip = _parse_ip(start)
        if start_ip is None or start_ip not in net:
            raise IPAMError(f"start ip address {start} is not within subnet {cidr} range")
        end_ip = _parse_ip(end)
        if end_ip is None or end_ip not in net:
            raise IPAMError(f"end ip address {end} is not within subnet {cidr} range")
        if start_ip > end_ip:
            raise IPAMError(f"end ip address {end} is less than start ip address {start}")
        if end_ip == broadcast:
            raise IPAMError(f"end ip address {end} equals broadcast ip address {broadcast}")

        with self._lock:
            self._ipam[name] = _Subnet(net, int(start_ip), int(end_ip), broadcast)

    def delete_ip_subnet(self, name: str) -> None:
        with self._lock:
            self._ipam.pop(name, None)

    def is_network_initialized(self, name: str) -> bool:
        return name in self._ipam

    def allocate_ip(self, name: str, ip_address: str) -> str:
        """Allocate the given address, or any free one when it is empty or 0.0.0.0."""
        with self._lock:
            subnet = self._subnet(name)
            designated = _parse_ip(ip_address or _ZERO)
            auto = designated is not None and designated.is_unspecified

            if not auto:
                if designated is None or designated not in subnet.network:
                    shown = ip_address if designated is None else str(designated)
                    net = subnet.network
                    raise IPAMError(
                        f"designated ip {shown} is not in subnet "
                        f"{net.network_address}/{net.prefixlen}"
                    )
                if designated == subnet.broadcast:
                    raise IPAMError(
                        f"designated ip {designated} equals broadcast ip address {subnet.broadcast}"
                    )
                value = subnet.lookup(str(designated))
                if value is not None:
                    if value in subnet.allocated:
                        raise IPAMError(f"designated ip {designated} is already allocated")
                    subnet.allocated.add(value)
                    return str(designated)
            else:
                for value in subnet.tracked():
                    if value not in subnet.allocated:
                        subnet.allocated.add(value)
                        return str(ipaddress.IPv4Address(value))

            raise IPAMError(f"no more ip addresses left in network {name} ipam")

    def deallocate_ip(self, name: str, ip_address: str) -> None:
        with self._lock:
            subnet = self._subnet(name)
            if not ip_address:
                raise IPAMError("designated ip is empty")
            value = subnet.lookup(ip_address)
            if value is None:
                raise IPAMError(
                    f"to-be-deallocated ip {ip_address} was not found in network {name} ipam"
                )
            if value not in subnet.allocated:
                raise IPAMError(f"to-be-deallocated ip {ip_address} was not allocated")
            subnet.allocated.discard(value)

    def revoke_ip(self, name: str, ip_address: str) -> None:
        """Remove an address from the pool entirely."""
        with self._lock:
            subnet = self._subnet(name)
            value = subnet.lookup(ip_address)
            if value is not None:
                subnet.revoked.add(value)
                subnet.allocated.discard(value)

    def is_allocated(self, name: str, ip_address: str) -> bool:
        with self._lock:
            subnet = self._subnet(name)
            value = subnet.lookup(ip_address)
            if value is None:
                raise IPAMError(f"ip {ip_address} was not found in network {name} ipam")
            return value in subnet.allocated

    def get_used(self, name: str) -> int:
        with self._lock:
            return len(self._subnet(name).allocated)

    def get_available(self, name: str) -> int:
        with self._lock:
            subnet = self._subnet(name)
            return subnet.total - len(subnet.allocated)

    def get_usage(self, name: str) -> None:
        """Log the subnet layout and its allocated addresses."""
        with self._lock:
            subnet = self._subnet(name)
            net = subnet.network
            log.info(
                "ipam[%s] ipNet=%s/%s, start=%s, end=%s, broadcast=%s",
                name,
                net.network_address,
                net.netmask,
                ipaddress.IPv4Address(subnet.start),
                ipaddress.IPv4Address(subnet.end),
                subnet.broadcast,
            )
            log.info("ipam[%s] allocatedIPs=", name)
            for value in sorted(subnet.allocated):
                log.info("ipam[%s] - %s", name, ipaddress.IPv4Address(value))
            used = len(subnet.allocated)
            log.info(
                "ipam[%s] total=%d, in-use=%d, available=%d",
                name,
                subnet.total,
                used,
                subnet.total - used,
            )

    def list_all(self, name: str) -> Dict[str, str]:
        """Map every tracked address to "true" or "false"."""
        with self._lock:
            subnet = self._subnet(name)
            return {
                str(ipaddress.IPv4Address(v)): "true" if v in subnet.allocated else "false"
                for v in subnet.tracked()
            }


class IPAllocatorBuilder:
    """Fluent set-up of an IPAllocator; errors along the way are ignored."""

    def __init__(self) -> None:
        self._allocator = IPAllocator()

    def ip_subnet(self, name: str, cidr: str, start: str, end: str) -> "IPAllocatorBuilder":
        try:
            self._allocator.new_ip_subnet(name, cidr, start, end)
        except ValueError:
            pass
        return self

    def revoke(self, name: str, *args: str) -> "IPAllocatorBuilder":
        for ip in args:
            try:
                self._allocator.revoke_ip(name, ip)
            except IPAMError:
                pass
        return self

    def allocate(self, name: str, *args: str) -> "IPAllocatorBuilder":
        for ip in args:
            try:
                self._allocator.allocate_ip(name, ip)
            except IPAMError:
                pass
        return self

    def build(self) -> IPAllocator:
        return self._allocator