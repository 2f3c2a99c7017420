"""IP address management, DHCP leases and replies, metrics and admission checks for VM networks."""

__version__ = "0.1.0"