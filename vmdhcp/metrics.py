"""Gauges for IP pool and VM network configuration state, in Prometheus text format."""

import threading
from typing import Dict, List, Mapping, Sequence, Tuple

LABEL_IP_POOL_NAME = "ippool"
LABEL_CIDR = "cidr"
LABEL_NETWORK_NAME = "network"
LABEL_VM_NET_CFG_NAME = "vmnetcfg"
LABEL_MAC_ADDRESS = "mac"
LABEL_IP_ADDRESS = "ip"
LABEL_STATE = "state"

IP_POOL_USED = "vmdhcpcontroller_ippool_used"
IP_POOL_AVAILABLE = "vmdhcpcontroller_ippool_available"
VM_NET_CFG_STATUS = "vmdhcpcontroller_vmnetcfg_status"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_value(value: float) -> str:
    if value == int(value) and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


class GaugeVec:
    """A gauge with a fixed set of label names."""

    def __init__(self, name: str, help: str, label_names: Sequence[str]) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Mapping[str, str]) -> Tuple[str, ...]:
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"inconsistent label names for {self.name}: "
                f"got {sorted(labels)}, want {sorted(self.label_names)}"
            )
        return tuple(labels[n] for n in self.label_names)

    def set(self, labels: Mapping[str, str], value: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def delete(self, labels: Mapping[str, str]) -> bool:
        """Remove one labelled sample; return whether it existed."""
        key = self._key(labels)
        with self._lock:
            return self._values.pop(key, None) is not None

    def samples(self) -> List[Tuple[Dict[str, str], float]]:
        with self._lock:
            return [
                (dict(zip(self.label_names, key)), value)
                for key, value in self._values.items()
            ]

    def _render(self) -> str:
        rows = []
        for labels, value in self.samples():
            names = sorted(labels)
            rows.append((tuple(labels[n] for n in names), names, labels, value))
        if not rows:
            return ""
        lines = [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} gauge"]
        for _, names, labels, value in sorted(rows, key=lambda r: r[0]):
            pairs = ",".join(f'{n}="{_escape(labels[n])}"' for n in names)
            lines.append(f"{self.name}{{{pairs}}} {_format_value(value)}")
        return "\n".join(lines) + "\n"


class MetricsAllocator:
    """The controller's metrics: pool usage and vmnetcfg status."""

    def __init__(self) -> None:
        pool_labels = [LABEL_IP_POOL_NAME, LABEL_CIDR, LABEL_NETWORK_NAME]
        self.ip_pool_used = GaugeVec(
            IP_POOL_USED, "Amount of IP addresses which are in use", pool_labels
        )
        self.ip_pool_available = GaugeVec(
            IP_POOL_AVAILABLE, "Amount of IP addresses which are available", pool_labels
        )
        self.vm_net_cfg_status = GaugeVec(
            VM_NET_CFG_STATUS,
            "Status of the vmnetcfg objects",
            [LABEL_VM_NET_CFG_NAME, LABEL_NETWORK_NAME, LABEL_MAC_ADDRESS, LABEL_IP_ADDRESS, LABEL_STATE],
        )

    @staticmethod
    def _pool_labels(name: str, cidr: str, network_name: str) -> Dict[str, str]:
        return {LABEL_IP_POOL_NAME: name, LABEL_CIDR: cidr, LABEL_NETWORK_NAME: network_name}

    def update_ip_pool_used(self, name: str, cidr: str, network_name: str, used: int) -> None:
        self.ip_pool_used.set(self._pool_labels(name, cidr, network_name), used)

    def update_ip_pool_available(
        self, name: str, cidr: str, network_name: str, available: int
    ) -> None:
        self.ip_pool_available.set(self._pool_labels(name, cidr, network_name), available)

    def delete_ip_pool(self, name: str, cidr: str, network_name: str) -> None:
        labels = self._pool_labels(name, cidr, network_name)
        self.ip_pool_used.delete(labels)
        self.ip_pool_available.delete(labels)

    def update_vm_net_cfg_status(
        self, name: str, network_name: str, mac_address: str, ip_address: str, state: str
    ) -> None:
        self.vm_net_cfg_status.set(
            {
                LABEL_VM_NET_CFG_NAME: name,
                LABEL_NETWORK_NAME: network_name,
                LABEL_MAC_ADDRESS: mac_address,
                LABEL_IP_ADDRESS: ip_address,
                LABEL_STATE: state,
            },
            1,
        )

    def delete_vm_net_cfg_status(self, name: str) -> None:
        """Remove every status sample that belongs to the named vmnetcfg."""
        for labels, _ in self.vm_net_cfg_status.samples():
            if labels[LABEL_VM_NET_CFG_NAME] == name:
                self.vm_net_cfg_status.delete(labels)

    def render(self) -> str:
        """Return all metrics in the Prometheus text exposition format."""
        gauges = sorted(
            (self.ip_pool_used, self.ip_pool_available, self.vm_net_cfg_status),
            key=lambda g: g.name,
        )
        return "".join(g._render() for g in gauges)