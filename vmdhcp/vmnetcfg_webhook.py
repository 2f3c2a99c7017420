"""Admission validation of VirtualMachineNetworkConfig objects and pool lookups."""

import logging
from dataclasses import dataclass, field
from typing import Collection, Iterable, List

from vmdhcp.ippool_webhook import AdmissionError

log = logging.getLogger(__name__)

VM_NET_CFG_BY_NETWORK_INDEX = "network.harvesterhci.io/vmnetcfg-by-network"
KIND = "VirtualMachineNetworkConfig"


@dataclass
class NetworkConfig:
    """One network interface of a virtual machine."""

    network_name: str
    mac_address: str = ""
    ip_address: str = ""


@dataclass
class VirtualMachineNetworkConfig:
    """The network configurations of one virtual machine."""

    namespace: str
    name: str
    vm_name: str = ""
    network_configs: List[NetworkConfig] = field(default_factory=list)


def vm_net_cfg_by_network(vm_net_cfg: VirtualMachineNetworkConfig) -> List[str]:
    """Return the network names the configuration refers to, in order."""
    return [nc.network_name for nc in vm_net_cfg.network_configs]


def who_use_ip_pool(
    vm_net_cfgs: Iterable[VirtualMachineNetworkConfig], namespace: str, name: str
) -> List[VirtualMachineNetworkConfig]:
    """Return the configurations that use the pool namespace/name."""
    network_name = f"{namespace}/{name}"
    return [cfg for cfg in vm_net_cfgs if network_name in vm_net_cfg_by_network(cfg)]


class VmNetCfgValidator:
    """Checks that every network a configuration uses has an IP pool.

    ``ip_pools`` holds the known pools as "namespace/name".
    """

    def __init__(self, ip_pools: Collection[str]) -> None:
        self._ip_pools = ip_pools

    def create(self, vm_net_cfg: VirtualMachineNetworkConfig) -> None:
        log.info("create vmnetcfg %s/%s", vm_net_cfg.namespace, vm_net_cfg.name)
        for nc in vm_net_cfg.network_configs:
            namespace, _, name = nc.network_name.rpartition("/")
            namespace, name = namespace.strip() or "default", name.strip()
            if f"{namespace}/{name}" not in self._ip_pools:
                raise AdmissionError(
                    "create",
                    KIND,
                    vm_net_cfg.namespace,
                    vm_net_cfg.name,
                    f'ippools.network.harvesterhci.io "{name}" not found',
                )