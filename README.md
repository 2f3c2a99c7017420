# vmdhcp

Building blocks for handing out IPv4 addresses to virtual machines. The
package uses only the Python standard library and needs Python 3.10 or later.

| Module | What it holds |
| --- | --- |
| `vmdhcp.ipam` | `IPAllocator` and `IPAllocatorBuilder`: one address range per named network |
| `vmdhcp.dhcp` | `DHCPAllocator` and `DHCPLease`: leases per hardware address and DHCP replies |
| `vmdhcp.dhcpv4` | `DHCPv4`, `MessageType`, `encode_domain_search`: the DHCPv4 packet codec |
| `vmdhcp.metrics` | `MetricsAllocator` and `GaugeVec`: gauges rendered in the Prometheus text format |
| `vmdhcp.ippool_webhook` | `Mutator`, `Validator`, `IPPool`, `Pool`, `PatchOp`, `AdmissionError` |
| `vmdhcp.vmnetcfg_webhook` | `VmNetCfgValidator`, `VirtualMachineNetworkConfig`, `NetworkConfig`, `who_use_ip_pool` |
| `vmdhcp.network` | `load_cidr`, `load_pool`, `PoolInfo`, `load_allocated` and other address helpers |
| `vmdhcp.util` | `safe_agent_concat_name`, `env_get_bool`, `file_exists` |

Errors are raised, not returned. `IPAMError`, `AdmissionError` and the errors
of `DHCPAllocator` are all subclasses of `ValueError`.

## Managing addresses

```python
from vmdhcp.ipam import IPAllocator

ipam = IPAllocator()
ipam.new_ip_subnet("default/net-1", "192.168.0.0/24", "192.168.0.10", "192.168.0.254")

ip = ipam.allocate_ip("default/net-1", "192.168.0.58")  # a chosen address
any_ip = ipam.allocate_ip("default/net-1", "")          # the lowest free one: "192.168.0.10"

ipam.get_used("default/net-1")        # 2
ipam.deallocate_ip("default/net-1", ip)
ipam.is_allocated("default/net-1", "192.168.0.10")   # True
ipam.list_all("default/net-1")        # {"192.168.0.10": "true", "192.168.0.11": "false", ...}
```

An empty address or `0.0.0.0` asks for any free address. `new_ip_subnet`
rejects a start or end outside the subnet, an end below the start and an end
equal to the broadcast address. `allocate_ip` rejects an unknown network, an
address outside the subnet, the broadcast address and an address already
taken, and raises when no address is left. `revoke_ip` takes an address out of
the range altogether; `get_available` counts the free addresses that remain and
`get_usage` logs the layout of a network.

`IPAllocatorBuilder` does the same setup in one expression and ignores
failures along the way:

```python
from vmdhcp.ipam import IPAllocatorBuilder

ipam = (
    IPAllocatorBuilder()
    .ip_subnet("default/net-1", "192.168.0.0/24", "192.168.0.10", "192.168.0.20")
    .revoke("default/net-1", "192.168.0.15")
    .allocate("default/net-1", "192.168.0.11", "192.168.0.12")
    .build()
)
```

## Serving leases

```python
from vmdhcp.dhcp import DHCPAllocator

dhcp = DHCPAllocator()
dhcp.add_lease(
    "02:00:00:00:00:01",   # hardware address
    "192.168.0.2",         # server IP
    "192.168.0.10",        # client IP
    "192.168.0.0/24",      # CIDR, used for the subnet mask
    "192.168.0.1",         # router
    ["192.0.2.53"],        # DNS servers
    "example.com",         # domain name, or None
    ["example.com"],       # domain search list
    [],                    # NTP servers: IPv4 addresses or host names to resolve
    300,                   # lease time in seconds; None or 0 means one year
)

dhcp.has_lease("02:00:00:00:00:01")   # True
dhcp.get_lease("02:00:00:00:00:01")   # the DHCPLease, or None for an unknown address
print(dhcp.list_all())                 # {hardware address: lease as JSON}
dhcp.delete_lease("02:00:00:00:00:01")
```

`add_lease` raises for an empty or malformed hardware address, for one that
already has a lease and for a malformed CIDR.

`build_reply(request)` takes a decoded `vmdhcp.dhcpv4.DHCPv4` request and
returns a DHCPOFFER for a DISCOVER or a DHCPACK for a REQUEST from a client
with a lease. It returns `None` for unknown clients, for packets that are not
boot requests and for other message types.

`run(nic)` opens a UDP socket on `0.0.0.0` port 67, bound to the interface
where the platform allows it, and answers requests on a background thread.
`stop(nic)` closes it. `dry_run(nic)` registers the interface without opening
a socket.

## Metrics

```python
from vmdhcp.metrics import MetricsAllocator

metrics = MetricsAllocator()
metrics.update_ip_pool_used("net-1", "192.168.0.0/24", "default/net-1", 2)
metrics.update_ip_pool_available("net-1", "192.168.0.0/24", "default/net-1", 243)
print(metrics.render())
```

prints

```
# HELP vmdhcpcontroller_ippool_available Amount of IP addresses which are available
# TYPE vmdhcpcontroller_ippool_available gauge
vmdhcpcontroller_ippool_available{cidr="192.168.0.0/24",ippool="net-1",network="default/net-1"} 243
# HELP vmdhcpcontroller_ippool_used Amount of IP addresses which are in use
# TYPE vmdhcpcontroller_ippool_used gauge
vmdhcpcontroller_ippool_used{cidr="192.168.0.0/24",ippool="net-1",network="default/net-1"} 2
```

`update_vm_net_cfg_status` sets a status sample for a virtual machine network
configuration, and `delete_vm_net_cfg_status(name)` removes every sample of
that configuration. `delete_ip_pool` removes both pool gauges.

## Admission checks

```python
from vmdhcp.ippool_webhook import IPPool, Mutator, Validator

pool = IPPool("default", "net-1", network_name="default/net-1", cidr="192.168.0.0/24")
Mutator().create(pool)
# [PatchOp(op="replace", path="/spec/ipv4Config/pool",
#          value=Pool(start="192.168.0.1", end="192.168.0.254", exclude=[])),
#  PatchOp(op="replace", path="/spec/ipv4Config/serverIP", value="192.168.0.1")]

validator = Validator("10.53.0.0/16", nads={"default/net-1"})
validator.create(IPPool("default", "net-1", network_name="default/net-1", cidr="10.53.0.0/24"))
# AdmissionError: cannot create IPPool default/net-1 because
#   cidr 10.53.0.0/24 overlaps cluster service cidr 10.53.0.0/16
```

`Mutator.create` returns an empty list when nothing needs filling in.
`Validator` checks the network attachment definition, the CIDR against the
service CIDR, and the start, end, server and router addresses against the
subnet; on `update` it also refuses a server IP that is already allocated or
excluded. `Validator.delete` refuses a pool that the optional
`vm_net_cfg_lookup(namespace, name)` callable reports as still in use.

`VmNetCfgValidator(ip_pools).create(cfg)` refuses a
`VirtualMachineNetworkConfig` that names a network with no known pool.
`who_use_ip_pool(cfgs, namespace, name)` picks the configurations that use a
pool.

## What it does not do

The package is a library. It has no command to run, no Kubernetes client,
controller or watch loop, and no HTTP server: the metrics are rendered as text
and the admission checks work on plain objects, so serving them and feeding
them cluster state is left to the caller. Leases and allocations live in
memory only.