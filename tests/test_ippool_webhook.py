import pytest

from vmdhcp.ippool_webhook import (
    AdmissionError,
    IPPool,
    Mutator,
    PatchOp,
    Pool,
    Validator,
    ensure_pool_range,
    ensure_server_ip,
)
from vmdhcp.util import EXCLUDED_MARK, RESERVED_MARK
from vmdhcp.vmnetcfg_webhook import (
    NetworkConfig,
    VirtualMachineNetworkConfig,
    who_use_ip_pool,
)

NS = "default"
NAME = "net-1"
NETWORK = f"{NS}/{NAME}"
SERVICE_CIDR = "10.53.0.0/16"
CIDR = "192.168.0.0/24"
CIDR_OVERLAP = "10.53.0.0/24"
EXCLUDED_IP = "192.168.0.100"
SERVER_WITHIN_RANGE = "192.168.0.2"
BAD_FIELD = 'ParseAddr("192.168.0.1000"): IPv4 field has value >255'


def make_pool(cidr, server_ip="", router="", start="", end="", exclude=(),
              network_name=NETWORK, allocated=None):
    return IPPool(
        namespace=NS,
        name=NAME,
        network_name=network_name,
        cidr=cidr,
        server_ip=server_ip,
        router=router,
        pool=Pool(start, end, list(exclude)),
        allocated=allocated,
    )


def validator():
    return Validator(SERVICE_CIDR, nads={NETWORK})


def pool_patch(start, end, exclude=()):
    return PatchOp("replace", "/spec/ipv4Config/pool", Pool(start, end, list(exclude)))


def server_patch(ip):
    return PatchOp("replace", "/spec/ipv4Config/serverIP", ip)


@pytest.mark.parametrize(
    "ip_pool, expected",
    [
        (make_pool("192.168.0.0/24"),
         [pool_patch("192.168.0.1", "192.168.0.254"), server_patch("192.168.0.1")]),
        (make_pool("172.19.64.128/29", router="172.19.64.129"),
         [pool_patch("172.19.64.129", "172.19.64.134"), server_patch("172.19.64.130")]),
        (make_pool("172.19.64.128/29", server_ip="172.19.64.130", router="172.19.64.129",
                   start="172.19.64.131", end="172.19.64.133"),
         []),
        (make_pool("172.19.64.128/30", router="172.19.64.129"),
         [pool_patch("172.19.64.129", "172.19.64.130"), server_patch("172.19.64.130")]),
        (make_pool("172.19.64.128/30"),
         [pool_patch("172.19.64.129", "172.19.64.130"), server_patch("172.19.64.129")]),
        (make_pool("172.19.64.128/30", start="172.19.64.130"),
         [pool_patch("172.19.64.130", "172.19.64.130"), server_patch("172.19.64.129")]),
        (make_pool("172.19.64.128/29", exclude=["172.19.64.129", "172.19.64.131"]),
         [pool_patch("172.19.64.129", "172.19.64.134", ["172.19.64.129", "172.19.64.131"]),
          server_patch("172.19.64.130")]),
        (make_pool("192.168.0.0/24", server_ip="192.168.0.50", router="192.168.0.100"),
         [pool_patch("192.168.0.1", "192.168.0.254")]),
    ],
)
def test_mutator_create_patch(ip_pool, expected):
    assert Mutator().create(ip_pool) == expected


@pytest.mark.parametrize(
    "ip_pool",
    [
        make_pool("172.19.64.128/29", router="172.19.64.130",
                  exclude=["172.19.64.129", "172.19.64.131", "172.19.64.132",
                           "172.19.64.133", "172.19.64.134"]),
        make_pool("172.19.64.128/32"),
        make_pool("172.19.64.128/31"),
    ],
)
def test_mutator_create_fails_to_assign_server(ip_pool):
    with pytest.raises(AdmissionError) as info:
        Mutator().create(ip_pool)
    assert str(info.value) == (
        f"cannot create IPPool {NS}/{NAME} because fail to assign ip for dhcp server"
    )


def test_ensure_server_ip_keeps_given_server():
    assert ensure_server_ip("192.168.0.50", CIDR, "", []) is None


def test_ensure_server_ip_rejects_malformed_exclude():
    with pytest.raises(ValueError, match="IPv4 field has value >255"):
        ensure_server_ip("", CIDR, "", ["192.168.0.1000"])


def test_ensure_pool_range_rejects_inverted_range():
    with pytest.raises(ValueError, match="invalid pool range"):
        ensure_pool_range(Pool("192.168.0.200", "192.168.0.100"), CIDR)


def test_ensure_pool_range_leaves_input_untouched():
    original = Pool(exclude=["192.168.0.5"])
    result = ensure_pool_range(original, CIDR)
    assert result == Pool("192.168.0.1", "192.168.0.254", ["192.168.0.5"])
    assert original == Pool(exclude=["192.168.0.5"])


COMMON_CASES = [
    (dict(cidr="192.168.0.0/24", server_ip="192.168.100.2"),
     "server ip 192.168.100.2 is not within subnet"),
    (dict(cidr="192.168.0.0/24", router="192.168.0.1000"), BAD_FIELD),
    (dict(cidr="192.168.0.0/24", router="192.168.1.1"),
     "router ip 192.168.1.1 is not within subnet"),
    (dict(cidr="192.168.0.0/24", router="192.168.0.0"),
     "router ip 192.168.0.0 is the same as network ip"),
    (dict(cidr="192.168.0.0/24", router="192.168.0.255"),
     "router ip 192.168.0.255 is the same as broadcast ip"),
    (dict(cidr="192.168.0.0/24", start="192.168.0.1000"), BAD_FIELD),
    (dict(cidr="192.168.0.0/24", start="192.168.1.100"),
     "start ip 192.168.1.100 is not within subnet"),
    (dict(cidr="192.168.0.0/24", start="192.168.0.0"),
     "start ip 192.168.0.0 is the same as network ip"),
    (dict(cidr="192.168.0.0/24", start="192.168.0.255"),
     "start ip 192.168.0.255 is the same as broadcast ip"),
    (dict(cidr="192.168.0.0/24", end="192.168.0.1000"), BAD_FIELD),
    (dict(cidr="192.168.0.0/24", end="192.168.1.100"),
     "end ip 192.168.1.100 is not within subnet"),
    (dict(cidr="192.168.0.0/24", end="192.168.0.0"),
     "end ip 192.168.0.0 is the same as network ip"),
    (dict(cidr="192.168.0.0/24", end="192.168.0.255"),
     "end ip 192.168.0.255 is the same as broadcast ip"),
    (dict(cidr="192.168.0.0/24", network_name="nonexist"),
     'network-attachment-definitions.k8s.cni.cncf.io "nonexist" not found'),
    (dict(cidr=CIDR_OVERLAP),
     f"cidr {CIDR_OVERLAP} overlaps cluster service cidr {SERVICE_CIDR}"),
]

CREATE_CASES = COMMON_CASES + [
    (dict(cidr="192.168.0.128/25", server_ip="192.168.0.128"),
     "server ip 192.168.0.128 is the same as network ip"),
    (dict(cidr="192.168.0.0/25", server_ip="192.168.0.127"),
     "server ip 192.168.0.127 is the same as broadcast ip"),
    (dict(cidr="192.168.0.254/24", server_ip="192.168.0.254", router="192.168.0.254"),
     "server ip 192.168.0.254 is the same as router ip"),
]

UPDATE_CASES = COMMON_CASES + [
    (dict(cidr=CIDR, server_ip="192.168.0.0"),
     "server ip 192.168.0.0 is the same as network ip"),
    (dict(cidr=CIDR, server_ip="192.168.0.255"),
     "server ip 192.168.0.255 is the same as broadcast ip"),
    (dict(cidr=CIDR, server_ip="192.168.0.254", router="192.168.0.254"),
     "server ip 192.168.0.254 is the same as router ip"),
    (dict(cidr=CIDR, server_ip="192.168.0.100",
          allocated={"192.168.0.100": "11:22:33:44:55:66"}),
     "server ip 192.168.0.100 is already occupied"),
    (dict(cidr=CIDR, server_ip=EXCLUDED_IP, allocated={EXCLUDED_IP: EXCLUDED_MARK}),
     f"server ip {EXCLUDED_IP} is already occupied"),
]


@pytest.mark.parametrize("kwargs, reason", CREATE_CASES)
def test_validator_create_rejects(kwargs, reason):
    with pytest.raises(AdmissionError) as info:
        validator().create(make_pool(**kwargs))
    assert str(info.value) == f"cannot create IPPool {NS}/{NAME} because {reason}"


@pytest.mark.parametrize("kwargs, reason", UPDATE_CASES)
def test_validator_update_rejects(kwargs, reason):
    old = make_pool(CIDR, server_ip="192.168.0.2")
    with pytest.raises(AdmissionError) as info:
        validator().update(old, make_pool(**kwargs))
    assert str(info.value) == f"cannot update IPPool {NS}/{NAME} because {reason}"


def test_validator_create_accepts_server_ip_within_subnet():
    v = validator()
    assert v.create(make_pool("192.168.0.0/24", server_ip="192.168.0.2")) is None
    with pytest.raises(AdmissionError):
        v.create(make_pool("192.168.0.0/24", server_ip="192.168.100.2"))


def test_validator_update_allows_reserved_but_not_excluded_server_ip():
    v = validator()
    reserved = make_pool(CIDR, server_ip=SERVER_WITHIN_RANGE,
                         allocated={SERVER_WITHIN_RANGE: RESERVED_MARK})
    assert v.update(None, reserved) is None
    excluded = make_pool(CIDR, server_ip=SERVER_WITHIN_RANGE,
                         allocated={SERVER_WITHIN_RANGE: EXCLUDED_MARK})
    with pytest.raises(AdmissionError, match="already occupied"):
        v.update(None, excluded)


def test_create_ignores_allocations():
    ip_pool = make_pool(CIDR, server_ip=EXCLUDED_IP, allocated={EXCLUDED_IP: EXCLUDED_MARK})
    assert validator().create(ip_pool) is None
    with pytest.raises(AdmissionError):
        validator().update(None, ip_pool)


def test_update_skips_pool_being_deleted():
    ip_pool = make_pool(CIDR, server_ip="192.168.100.2")
    ip_pool.deleting = True
    assert validator().update(None, ip_pool) is None
    ip_pool.deleting = False
    with pytest.raises(AdmissionError):
        validator().update(None, ip_pool)


def test_delete_refuses_pool_in_use():
    cfgs = [
        VirtualMachineNetworkConfig("default", "vm-a", network_configs=[NetworkConfig(NETWORK)]),
        VirtualMachineNetworkConfig("other", "vm-b", network_configs=[NetworkConfig(NETWORK)]),
        VirtualMachineNetworkConfig("default", "vm-c", network_configs=[NetworkConfig("x/y")]),
    ]
    v = Validator(SERVICE_CIDR, {NETWORK}, lambda ns, n: who_use_ip_pool(cfgs, ns, n))
    with pytest.raises(AdmissionError) as info:
        v.delete(make_pool(CIDR))
    assert info.value.operation == "delete"
    assert "default/vm-a, other/vm-b" in info.value.reason
    assert "vm-c" not in info.value.reason


def test_delete_allows_unused_pool():
    v = Validator(SERVICE_CIDR, {NETWORK}, lambda ns, n: [])
    assert v.delete(make_pool(CIDR)) is None
    busy = Validator(SERVICE_CIDR, {NETWORK},
                     lambda ns, n: [VirtualMachineNetworkConfig(ns, "vm")])
    with pytest.raises(AdmissionError):
        busy.delete(make_pool(CIDR))