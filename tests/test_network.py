import ipaddress
import json

import pytest

from vmdhcp.network import (
    get_service_cidr_from_node,
    is_ip_addr_in_list,
    is_ip_in_between_of,
    load_allocated,
    load_cidr,
    load_pool,
)
from vmdhcp.util import EXCLUDED_MARK, RESERVED_MARK


def test_service_cidr_from_annotation():
    annotations = {
        "rke2.io/node-args": json.dumps(
            ["--cluster-cidr", "10.52.0.0/16", "--service-cidr", "10.53.0.0/16"]
        )
    }
    assert get_service_cidr_from_node("node-0", annotations) == "10.53.0.0/16"


def test_service_cidr_errors():
    with pytest.raises(ValueError, match="service CIDR not found for node node-0"):
        get_service_cidr_from_node("node-0", None)
    with pytest.raises(ValueError, match="annotation rke2.io/node-args not found"):
        get_service_cidr_from_node("node-0", {})
    with pytest.raises(ValueError, match="serviceCIDR not found for node node-0"):
        get_service_cidr_from_node("node-0", {"rke2.io/node-args": '["--service-cidr"]'})


def test_load_cidr_masks_host_bits():
    net, network, broadcast = load_cidr("192.168.0.254/24")
    assert network == ipaddress.ip_address("192.168.0.0")
    assert broadcast == ipaddress.ip_address("192.168.0.255")
    assert network in net and broadcast in net


@pytest.mark.parametrize("cidr", ["192.168.0.0/36", "192.168.0.0", "foo/24", "10.0.0.0/255.0.0.0"])
def test_load_cidr_invalid(cidr):
    with pytest.raises(ValueError, match="invalid CIDR address"):
        load_cidr(cidr)


def test_load_pool_optional_fields():
    info = load_pool("192.168.0.0/24", "", "", "", "192.168.0.1")
    assert info.start_ip_addr is None and info.server_ip_addr is None
    assert info.router_ip_addr == ipaddress.ip_address("192.168.0.1")


def test_load_pool_malformed_address():
    with pytest.raises(ValueError) as exc:
        load_pool("192.168.0.0/24", "", "", "", "192.168.0.1000")
    assert str(exc.value) == 'ParseAddr("192.168.0.1000"): IPv4 field has value >255'


def test_load_allocated_splits():
    allocated, excluded, reserved = load_allocated(
        {
            "192.168.0.100": "11:22:33:44:55:66",
            "192.168.0.101": EXCLUDED_MARK,
            "192.168.0.2": RESERVED_MARK,
            "bogus": "x",
        }
    )
    assert allocated == [ipaddress.ip_address("192.168.0.100")]
    assert excluded == [ipaddress.ip_address("192.168.0.101")]
    assert reserved == [ipaddress.ip_address("192.168.0.2")]


def test_is_ip_addr_in_list():
    items = [ipaddress.ip_address("10.0.0.1")]
    assert is_ip_addr_in_list(ipaddress.ip_address("10.0.0.1"), items)
    assert not is_ip_addr_in_list(ipaddress.ip_address("10.0.0.2"), items)


def test_is_ip_in_between_of():
    assert is_ip_in_between_of("10.0.0.5", "10.0.0.1", "10.0.0.5")
    assert is_ip_in_between_of("10.0.0.1", "10.0.0.1", "10.0.0.5")
    assert not is_ip_in_between_of("10.0.0.6", "10.0.0.1", "10.0.0.5")
    assert not is_ip_in_between_of("bad", "10.0.0.1", "10.0.0.5")