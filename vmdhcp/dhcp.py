"""DHCP lease store and DHCPv4 responder."""

import base64
import ipaddress
import json
import logging
import socket
import string
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from vmdhcp.dhcpv4 import (
    BOOT_REQUEST,
    OPT_DNS,
    OPT_DOMAIN_NAME,
    OPT_DOMAIN_SEARCH,
    OPT_LEASE_TIME,
    OPT_MESSAGE_TYPE,
    OPT_NTP_SERVERS,
    OPT_ROUTER,
    OPT_SERVER_IDENTIFIER,
    OPT_SUBNET_MASK,
    DHCPv4,
    MessageType,
    encode_domain_search,
)
from vmdhcp.network import load_cidr

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

DEFAULT_LEASE_TIME = 31536000  # one year, in seconds
DHCP_SERVER_PORT = 67

_HEX = set(string.hexdigits)
_ZERO_IP = ipaddress.IPv4Address("0.0.0.0")


def _parse_ip(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _as_v4(ip: Optional[IPAddress]) -> Optional[ipaddress.IPv4Address]:
    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    if isinstance(ip, ipaddress.IPv6Address):
        return ip.ipv4_mapped
    return None


def _ip_bytes(ip: Optional[IPAddress]) -> bytes:
    v4 = _as_v4(ip)
    return v4.packed if v4 is not None else b""


def _ip_text(ip: Optional[IPAddress]) -> str:
    return "" if ip is None else str(ip)


def _valid_mac(text: str) -> bool:
    for sep, width, counts in ((":", 2, (6, 8, 20)), ("-", 2, (6, 8, 20)), (".", 4, (3, 4, 10))):
        parts = text.split(sep)
        if len(parts) in counts and all(len(p) == width and set(p) <= _HEX for p in parts):
            return True
    return False


def _lookup_ipv4(host: str) -> List[ipaddress.IPv4Address]:
    found: List[ipaddress.IPv4Address] = []
    for family, _, _, _, sockaddr in socket.getaddrinfo(host, None):
        if family == socket.AF_INET:
            ip = ipaddress.IPv4Address(sockaddr[0])
            if ip not in found:
                found.append(ip)
    return found


def _hw_addr(packet: DHCPv4) -> str:
    return ":".join(f"{b:02x}" for b in packet.chaddr[:packet.hlen])


@dataclass
class DHCPLease:
    """Addresses and settings handed to one client."""

    server_ip: Optional[IPAddress] = None
    client_ip: Optional[IPAddress] = None
    subnet_mask: Optional[IPAddress] = None
    router: Optional[IPAddress] = None
    dns: List[Optional[IPAddress]] = field(default_factory=list)
    domain_name: str = ""
    domain_search: List[str] = field(default_factory=list)
    ntp: List[ipaddress.IPv4Address] = field(default_factory=list)
    lease_time: int = 0

    def to_json(self) -> str:
        """Serialize the lease to compact JSON."""
        mask = base64.b64encode(self.subnet_mask.packed).decode() if self.subnet_mask else None
        return json.dumps(
            {
                "ServerIP": _ip_text(self.server_ip),
                "ClientIP": _ip_text(self.client_ip),
                "SubnetMask": mask,
                "Router": _ip_text(self.router),
                "DNS": [_ip_text(ip) for ip in self.dns] or None,
                "DomainName": self.domain_name,
                "DomainSearch": list(self.domain_search) or None,
                "NTP": [str(ip) for ip in self.ntp] or None,
                "LeaseTime": self.lease_time,
            },
            separators=(",", ":"),
        )


class _Server:
    def __init__(self, sock: socket.socket, nic: str, handler) -> None:
        self.sock = sock
        self.nic = nic
        self.closed = False
        self._handler = handler
        self.thread = threading.Thread(target=self._serve, name=f"dhcp-{nic}", daemon=True)

    def _serve(self) -> None:
        while True:
            try:
                data, peer = self.sock.recvfrom(4096)
            except OSError as exc:
                if not self.closed:
                    log.error("(dhcp.Run) DHCP server on nic %s exited with error: %s", self.nic, exc)
                return
            try:
                request = DHCPv4.from_bytes(data)
            except ValueError as exc:
                log.error("(dhcp.Run) cannot parse packet from %s: %s", peer, exc)
                continue
            self._handler(self.sock, peer, request)

    def close(self) -> None:
        self.closed = True
        self.sock.close()


class DHCPAllocator:
    """Holds leases by hardware address and answers DHCP requests."""

    def __init__(self) -> None:
        self._leases: Dict[str, DHCPLease] = {}
        self._servers: Dict[str, Optional[_Server]] = {}
        self._lock = threading.RLock()

    def add_lease(
        self,
        hw_addr: str,
        server_ip: str,
        client_ip: str,
        cidr: str,
        router_ip: str,
        dns_servers: Optional[List[str]] = None,
        domain_name: Optional[str] = None,
        domain_search: Optional[List[str]] = None,
        ntp_servers: Optional[List[str]] = None,
        lease_time: Optional[int] = None,
    ) -> None:
        """Store a lease; raises ValueError on bad input or a duplicate."""
        with self._lock:
            if not hw_addr:
                raise ValueError("hwaddr is empty")
            if not _valid_mac(hw_addr):
                raise ValueError(f"hwaddr {hw_addr} is not valid")
            if hw_addr in self._leases:
                raise ValueError(f"lease for hwaddr {hw_addr} already exists")

            net, _, _ = load_cidr(cidr)
            lease = DHCPLease(
                server_ip=_parse_ip(server_ip),
                client_ip=_parse_ip(client_ip),
                subnet_mask=net.netmask,
                router=_parse_ip(router_ip),
                dns=[_parse_ip(s) for s in dns_servers or []],
                domain_name=domain_name or "",
                domain_search=list(domain_search or []),
                lease_time=lease_time or 0,
            )
            for ntp in ntp_servers or []:
                v4 = _as_v4(_parse_ip(ntp))
                if v4 is not None:
                    lease.ntp.append(v4)
                    continue
                try:
                    lease.ntp.extend(_lookup_ipv4(ntp))
                except OSError as exc:
                    log.error(
                        "(dhcp.AddLease) cannot get any ip addresses from ntp domainname entry %s: %s",
                        ntp,
                        exc,
                    )

            self._leases[hw_addr] = lease
            log.info("(dhcp.AddLease) lease added for hardware address: %s", hw_addr)

    def get_lease(self, hw_addr: str) -> Optional[DHCPLease]:
        with self._lock:
            return self._leases.get(hw_addr)

    def has_lease(self, hw_addr: str) -> bool:
        with self._lock:
            return hw_addr in self._leases

    def delete_lease(self, hw_addr: str) -> None:
        with self._lock:
            if hw_addr not in self._leases:
                raise ValueError(f"lease for hwaddr {hw_addr} does not exists")
            del self._leases[hw_addr]
            log.info("(dhcp.DeleteLease) lease deleted for hardware address: %s", hw_addr)

    def usage(self) -> None:
        """Log every lease."""
        with self._lock:
            for hw_addr, lease in self._leases.items():
                log.info(
                    "(dhcp.Usage) lease: hwaddr=%s, clientip=%s, netmask=%s, router=%s, dns=%s, "
                    "domain=%s, domainsearch=%s, ntp=%s, leasetime=%d",
                    hw_addr,
                    _ip_text(lease.client_ip),
                    lease.subnet_mask.packed.hex() if lease.subnet_mask else "",
                    _ip_text(lease.router),
                    [_ip_text(ip) for ip in lease.dns],
                    lease.domain_name,
                    lease.domain_search,
                    [str(ip) for ip in lease.ntp],
                    lease.lease_time,
                )

    def build_reply(self, request: Optional[DHCPv4]) -> Optional[DHCPv4]:
        """Return the offer or ack for a request, or None if it is not answered."""
        with self._lock:
            if request is None:
                log.error("(dhcp.dhcpHandler) packet is nil!")
                return None
            if request.op != BOOT_REQUEST:
                log.error("(dhcp.dhcpHandler) not a BootRequest!")
                return None

            reply = request.reply()
            hw_addr = _hw_addr(request)
            lease = self._leases.get(hw_addr)
            if lease is None or lease.client_ip is None:
                log.warning("(dhcp.dhcpHandler) NO LEASE FOUND: hwaddr=%s", hw_addr)
                return None

            log.debug("(dhcp.dhcpHandler) LEASE FOUND: hwaddr=%s, lease=%s", hw_addr, lease.to_json())

            client = _as_v4(lease.client_ip) or _ZERO_IP
            reply.ciaddr = client
            reply.siaddr = _as_v4(lease.server_ip) or _ZERO_IP
            reply.yiaddr = client

            reply.update_option(OPT_SERVER_IDENTIFIER, _ip_bytes(lease.server_ip))
            reply.update_option(
                OPT_SUBNET_MASK, lease.subnet_mask.packed if lease.subnet_mask else b""
            )
            reply.update_option(OPT_ROUTER, _ip_bytes(lease.router))
            if lease.dns:
                reply.update_option(OPT_DNS, b"".join(_ip_bytes(ip) for ip in lease.dns))
            if lease.domain_name:
                reply.update_option(OPT_DOMAIN_NAME, lease.domain_name.encode())
            if lease.domain_search:
                reply.update_option(OPT_DOMAIN_SEARCH, encode_domain_search(lease.domain_search))
            if lease.ntp:
                reply.update_option(OPT_NTP_SERVERS, b"".join(ip.packed for ip in lease.ntp))
            seconds = lease.lease_time if lease.lease_time > 0 else DEFAULT_LEASE_TIME
            reply.update_option(OPT_LEASE_TIME, seconds.to_bytes(4, "big"))

            message_type = request.message_type()
            if message_type is MessageType.DISCOVER:
                reply.update_option(OPT_MESSAGE_TYPE, bytes([MessageType.OFFER]))
            elif message_type is MessageType.REQUEST:
                reply.update_option(OPT_MESSAGE_TYPE, bytes([MessageType.ACK]))
            else:
                log.warning(
                    "(dhcp.dhcpHandler) Unhandled message type for hwaddr [%s]: %s",
                    hw_addr,
                    message_type,
                )
                return None
            return reply

    def _handle(self, sock: socket.socket, peer, request: DHCPv4) -> None:
        reply = self.build_reply(request)
        if reply is None:
            return
        try:
            sock.sendto(reply.to_bytes(), peer)
        except OSError as exc:
            log.error("(dhcp.dhcpHandler) Cannot reply to client: %s", exc)

    def run(self, nic: str) -> None:
        """Start answering DHCP requests on the given interface."""
        log.info("(dhcp.Run) starting DHCP service on nic %s", nic)
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            if hasattr(socket, "SO_BINDTODEVICE"):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BINDTODEVICE, nic.encode())
            # Listen on 0.0.0.0, otherwise client discovers are not answered.
            sock.bind(("0.0.0.0", DHCP_SERVER_PORT))
        except OSError:
            sock.close()
            raise
        server = _Server(sock, nic, self._handle)
        server.thread.start()
        with self._lock:
            self._servers[nic] = server

    def dry_run(self, nic: str) -> None:
        """Record the interface without opening a socket."""
        log.info("(dhcp.DryRun) starting DHCP service on nic %s", nic)
        with self._lock:
            self._servers[nic] = None

    def stop(self, nic: str) -> None:
        """Stop the server on the interface, if one runs."""
        log.info("(dhcp.Stop) stopping DHCP service on nic %s", nic)
        with self._lock:
            server = self._servers.get(nic)
        if server is not None:
            server.close()

    def list_all(self) -> Dict[str, str]:
        """Map each hardware address to its lease as JSON."""
        with self._lock:
            return {mac: lease.to_json() for mac, lease in self._leases.items()}