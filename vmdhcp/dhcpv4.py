"""DHCPv4 packet encoding and decoding."""

import ipaddress
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterable, Optional

BOOT_REQUEST = 1
BOOT_REPLY = 2

OPT_PAD = 0
OPT_SUBNET_MASK = 1
OPT_ROUTER = 3
OPT_DNS = 6
OPT_DOMAIN_NAME = 15
OPT_NTP_SERVERS = 42
OPT_LEASE_TIME = 51
OPT_MESSAGE_TYPE = 53
OPT_SERVER_IDENTIFIER = 54
OPT_RELAY_AGENT_INFO = 82
OPT_DOMAIN_SEARCH = 119
OPT_END = 255

MAGIC_COOKIE = bytes((99, 130, 83, 99))
MIN_PACKET_LEN = 300

_HEADER = struct.Struct("!BBBBIHH4s4s4s4s16s64s128s")
_ZERO_IP = ipaddress.IPv4Address("0.0.0.0")


class MessageType(IntEnum):
    """DHCP message types carried in option 53."""

    DISCOVER = 1
    OFFER = 2
    REQUEST = 3
    DECLINE = 4
    ACK = 5
    NAK = 6
    RELEASE = 7
    INFORM = 8


@dataclass
class DHCPv4:
    """A DHCPv4 packet; options map option codes to raw values."""

    op: int = BOOT_REQUEST
    htype: int = 1
    hlen: int = 6
    hops: int = 0
    xid: int = 0
    secs: int = 0
    flags: int = 0
    ciaddr: ipaddress.IPv4Address = _ZERO_IP
    yiaddr: ipaddress.IPv4Address = _ZERO_IP
    siaddr: ipaddress.IPv4Address = _ZERO_IP
    giaddr: ipaddress.IPv4Address = _ZERO_IP
    chaddr: bytes = b""
    sname: bytes = b""
    file: bytes = b""
    options: Dict[int, bytes] = field(default_factory=dict)

    @classmethod
    def from_bytes(cls, data: bytes) -> "DHCPv4":
        """Decode a packet from its wire form."""
        data = bytes(data)
        if len(data) < _HEADER.size + len(MAGIC_COOKIE):
            raise ValueError(f"packet too short: {len(data)} bytes")
        (op, htype, hlen, hops, xid, secs, flags, ciaddr, yiaddr, siaddr, giaddr,
         chaddr, sname, file) = _HEADER.unpack_from(data)
        cookie_end = _HEADER.size + len(MAGIC_COOKIE)
        if data[_HEADER.size:cookie_end] != MAGIC_COOKIE:
            raise ValueError("malformed DHCP packet: bad magic cookie")

        options: Dict[int, bytes] = {}
        pos = cookie_end
        while pos < len(data):
            code = data[pos]
            if code == OPT_PAD:
                pos += 1
                continue
            if code == OPT_END:
                break
            if pos + 1 >= len(data):
                raise ValueError(f"option {code} is truncated")
            length = data[pos + 1]
            value = data[pos + 2:pos + 2 + length]
            if len(value) < length:
                raise ValueError(f"option {code} is truncated")
            options[code] = options.get(code, b"") + value
            pos += 2 + length

        return cls(
            op=op,
            htype=htype,
            hlen=hlen,
            hops=hops,
            xid=xid,
            secs=secs,
            flags=flags,
            ciaddr=ipaddress.IPv4Address(ciaddr),
            yiaddr=ipaddress.IPv4Address(yiaddr),
            siaddr=ipaddress.IPv4Address(siaddr),
            giaddr=ipaddress.IPv4Address(giaddr),
            chaddr=chaddr[:min(hlen, 16)],
            sname=sname.rstrip(b"\0"),
            file=file.rstrip(b"\0"),
            options=options,
        )

    def to_bytes(self) -> bytes:
        """Encode the packet, options sorted by code and padded to the minimum size."""
        out = bytearray(_HEADER.pack(
            self.op, self.htype, self.hlen, self.hops, self.xid, self.secs, self.flags,
            self.ciaddr.packed, self.yiaddr.packed, self.siaddr.packed, self.giaddr.packed,
            self.chaddr[:16], self.sname[:64], self.file[:128],
        ))
        out += MAGIC_COOKIE
        for code in sorted(self.options):
            value = self.options[code]
            chunks = [value[i:i + 255] for i in range(0, len(value), 255)] or [b""]
            for chunk in chunks:
                out += bytes((code, len(chunk))) + chunk
        out.append(OPT_END)
        if len(out) < MIN_PACKET_LEN:
            out += bytes(MIN_PACKET_LEN - len(out))
        return bytes(out)

    def message_type(self) -> Optional[MessageType]:
        """Return the message type, or None if absent or unknown."""
        value = self.options.get(OPT_MESSAGE_TYPE)
        if not value or len(value) != 1:
            return None
        try:
            return MessageType(value[0])
        except ValueError:
            return None

    def update_option(self, code: int, value: bytes) -> None:
        """Set or replace an option."""
        self.options[int(code)] = bytes(value)

    def reply(self) -> "DHCPv4":
        """Build a reply skeleton for this request."""
        if self.op != BOOT_REQUEST:
            raise ValueError("cannot reply to a packet that is not a BootRequest")
        reply = DHCPv4(
            op=BOOT_REPLY,
            htype=self.htype,
            hlen=self.hlen,
            xid=self.xid,
            flags=self.flags,
            giaddr=self.giaddr,
            chaddr=self.chaddr,
        )
        if OPT_RELAY_AGENT_INFO in self.options:
            reply.options[OPT_RELAY_AGENT_INFO] = self.options[OPT_RELAY_AGENT_INFO]
        return reply


def encode_domain_search(labels: Iterable[str]) -> bytes:
    """Encode domain names as uncompressed RFC 1035 label sequences."""
    out = bytearray()
    for label in labels:
        for part in label.split("."):
            if part:
                encoded = part.encode()
                out.append(len(encoded))
                out += encoded
        out.append(0)
    return bytes(out)