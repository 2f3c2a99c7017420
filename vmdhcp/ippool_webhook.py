"""Admission mutation and validation of IPPool objects."""

import ipaddress
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Collection, Dict, Iterable, List, Optional, Tuple

from vmdhcp.network import (
    IPAddress,
    PoolInfo,
    _parse_addr,
    is_ip_addr_in_list,
    load_allocated,
    load_cidr,
    load_pool,
)

log = logging.getLogger(__name__)

PATCH_OP_REPLACE = "replace"
POOL_PATH = "/spec/ipv4Config/pool"
SERVER_IP_PATH = "/spec/ipv4Config/serverIP"


class AdmissionError(ValueError):
    """Raised when an admission request is refused."""

    def __init__(self, operation: str, kind: str, namespace: str, name: str, reason) -> None:
        self.operation = operation
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.reason = str(reason)
        super().__init__(f"cannot {operation} {kind} {namespace}/{name} because {self.reason}")


@dataclass
class Pool:
    """The allocatable range of an IP pool and the addresses kept out of it."""

    start: str = ""
    end: str = ""
    exclude: List[str] = field(default_factory=list)


@dataclass
class IPPool:
    """The parts of an IPPool object that admission looks at."""

    namespace: str
    name: str
    network_name: str = ""
    cidr: str = ""
    server_ip: str = ""
    router: str = ""
    pool: Pool = field(default_factory=Pool)
    allocated: Optional[Dict[str, str]] = None
    deleting: bool = False


@dataclass
class PatchOp:
    """One JSON patch operation."""

    op: str
    path: str
    value: Any


def _lenient(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _key(addr: IPAddress) -> Tuple[int, int]:
    return addr.version, int(addr)


def ensure_server_ip(
    server: str, cidr: str, router: str, excludes: Iterable[str]
) -> Optional[str]:
    """Pick a server IP when none is set; return None when one already is."""
    ip_net, network, broadcast = load_cidr(cidr)

    masked: List[IPAddress] = []
    router_addr = _lenient(router)
    if router_addr is not None:
        masked.append(router_addr)

    server_addr = _lenient(server)
    masked.extend(_parse_addr(exclude) for exclude in excludes)

    if server_addr is not None:
        return None

    addr_type = type(network)
    for value in range(int(network) + 1, int(broadcast) + 1):
        candidate = addr_type(value)
        if is_ip_addr_in_list(candidate, masked):
            continue
        if candidate == broadcast:
            break
        log.info("auto assign serverIP=%s", candidate)
        return str(candidate)

    raise ValueError("fail to assign ip for dhcp server")


def ensure_pool_range(pool: Pool, cidr: str) -> Optional[Pool]:
    """Fill in a missing start or end; return the new pool, or None if unchanged."""
    start = _lenient(pool.start)
    end = _lenient(pool.end)
    ip_net, network, broadcast = load_cidr(cidr)

    new_pool = replace(pool, exclude=list(pool.exclude))

    if start is None:
        start = network + 1
        if start not in ip_net:
            log.warning("start ip is out of subnet")
        new_pool.start = str(start)

    if end is None:
        end = broadcast - 1
        if end not in ip_net:
            log.warning("end ip is out of subnet")
        new_pool.end = str(end)

    if _key(start) > _key(end):
        raise ValueError("invalid pool range")

    if new_pool != pool:
        log.info("auto assign startIP=%s, endIP=%s", start, end)
        return new_pool
    return None


class Mutator:
    """Fills in defaults of IPPool objects on creation."""

    def create(self, ip_pool: IPPool) -> List[PatchOp]:
        """Return the patch that completes the pool's server IP and range."""
        try:
            server_ip = ensure_server_ip(
                ip_pool.server_ip, ip_pool.cidr, ip_pool.router, ip_pool.pool.exclude
            )
            pool = ensure_pool_range(ip_pool.pool, ip_pool.cidr)
        except ValueError as exc:
            raise AdmissionError("create", "IPPool", ip_pool.namespace, ip_pool.name, exc) from exc

        patch: List[PatchOp] = []
        if pool is not None:
            patch.append(PatchOp(PATCH_OP_REPLACE, POOL_PATH, pool))
        if server_ip is not None:
            patch.append(PatchOp(PATCH_OP_REPLACE, SERVER_IP_PATH, server_ip))
        return patch


def _check_pool_range(info: PoolInfo) -> None:
    for label, addr in (("start", info.start_ip_addr), ("end", info.end_ip_addr)):
        if addr is None:
            continue
        if addr not in info.ip_net:
            raise ValueError(f"{label} ip {addr} is not within subnet")
        if addr == info.network_ip_addr:
            raise ValueError(f"{label} ip {addr} is the same as network ip")
        if addr == info.broadcast_ip_addr:
            raise ValueError(f"{label} ip {addr} is the same as broadcast ip")


def _check_server_ip(info: PoolInfo, unallocatables: Iterable[IPAddress]) -> None:
    """Check the server IP against the subnet, router and occupied addresses.

    Reserved addresses are not compared: they can only be the server or router.
    """
    server = info.server_ip_addr
    if server is None:
        return
    if server not in info.ip_net:
        raise ValueError(f"server ip {server} is not within subnet")
    if server == info.network_ip_addr:
        raise ValueError(f"server ip {server} is the same as network ip")
    if server == info.broadcast_ip_addr:
        raise ValueError(f"server ip {server} is the same as broadcast ip")
    if info.router_ip_addr is not None and server == info.router_ip_addr:
        raise ValueError(f"server ip {server} is the same as router ip")
    if server in unallocatables:
        raise ValueError(f"server ip {server} is already occupied")


def _check_router(info: PoolInfo) -> None:
    router = info.router_ip_addr
    if router is None:
        return
    if router not in info.ip_net:
        raise ValueError(f"router ip {router} is not within subnet")
    if router == info.network_ip_addr:
        raise ValueError(f"router ip {router} is the same as network ip")
    if router == info.broadcast_ip_addr:
        raise ValueError(f"router ip {info.broadcast_ip_addr} is the same as broadcast ip")


class Validator:
    """Validates IPPool objects on create, update and delete.

    ``nads`` holds the known network attachment definitions as
    "namespace/name"; ``vm_net_cfg_lookup`` returns the configurations
    (objects with ``namespace`` and ``name``) that use a given pool.
    Without a lookup no configuration is taken to use any pool.
    """

    def __init__(
        self,
        service_cidr: str,
        nads: Collection[str] = (),
        vm_net_cfg_lookup: Optional[Callable[[str, str], Iterable[Any]]] = None,
    ) -> None:
        self.service_cidr = service_cidr
        self._nads = nads
        self._lookup = vm_net_cfg_lookup

    def create(self, ip_pool: IPPool) -> None:
        log.info("create ippool %s/%s", ip_pool.namespace, ip_pool.name)
        self._validate("create", ip_pool, with_allocations=False)

    def update(self, old_ip_pool: Optional[IPPool], new_ip_pool: IPPool) -> None:
        if new_ip_pool.deleting:
            return
        log.info("update ippool %s/%s", new_ip_pool.namespace, new_ip_pool.name)
        self._validate("update", new_ip_pool, with_allocations=True)

    def delete(self, ip_pool: IPPool) -> None:
        log.info("delete ippool %s/%s", ip_pool.namespace, ip_pool.name)
        if self._lookup is None:
            users: List[Any] = []
        else:
            users = list(self._lookup(ip_pool.namespace, ip_pool.name))
        log.info("%d vmnetcfg(s) associated", len(users))
        if users:
            names = ", ".join(f"{cfg.namespace}/{cfg.name}" for cfg in users)
            raise AdmissionError(
                "delete",
                "IPPool",
                ip_pool.namespace,
                ip_pool.name,
                f"it's still used by VirtualMachineNetworkConfig(s) {names}, "
                "which must be removed at first",
            )

    def _validate(self, operation: str, ip_pool: IPPool, with_allocations: bool) -> None:
        try:
            info = load_pool(
                ip_pool.cidr,
                ip_pool.pool.start,
                ip_pool.pool.end,
                ip_pool.server_ip,
                ip_pool.router,
            )
            unallocatables: List[IPAddress] = []
            if with_allocations and ip_pool.allocated is not None:
                allocated, excluded, _ = load_allocated(ip_pool.allocated)
                unallocatables = allocated + excluded
            self._check_nad(ip_pool.network_name)
            self._check_cidr(ip_pool.cidr)
            _check_pool_range(info)
            _check_server_ip(info, unallocatables)
            _check_router(info)
        except ValueError as exc:
            raise AdmissionError(
                operation, "IPPool", ip_pool.namespace, ip_pool.name, exc
            ) from exc

    def _check_nad(self, namespaced_name: str) -> None:
        namespace, _, name = namespaced_name.rpartition("/")
        namespace, name = namespace.strip() or "default", name.strip()
        if f"{namespace}/{name}" not in self._nads:
            raise ValueError(f'network-attachment-definitions.k8s.cni.cncf.io "{name}" not found')

    def _check_cidr(self, cidr: str) -> None:
        try:
            ip_net, _, _ = load_cidr(cidr)
        except ValueError:
            return
        svc_net, _, _ = load_cidr(self.service_cidr)
        if svc_net.network_address in ip_net or ip_net.network_address in svc_net:
            raise ValueError(f"cidr {cidr} overlaps cluster service cidr {svc_net}")