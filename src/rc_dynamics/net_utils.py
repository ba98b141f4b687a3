"""
Network helpers - Local address selection for stream destinations

A device can only stream to us if we advertise an address it can reach.
get_local_ip() picks one from the local interface table without doing any
network I/O.
"""

import ipaddress
import logging
import socket
from typing import Dict, List, Optional, Tuple

import psutil

from .errors import NoLocalAddressError

logger = logging.getLogger(__name__)

# Interface name prefixes of wired and wireless adapters
DEFAULT_INTERFACE_PREFIXES = ("eth", "en", "wl")

InterfaceTable = Dict[str, List[Tuple[str, str]]]


def is_valid_ip_address(ip: str) -> bool:
    """Check whether ip is a dotted-quad IPv4 address"""
    try:
        socket.inet_pton(socket.AF_INET, ip)
        return True
    except (OSError, TypeError):
        return False


def ip_in_range(ip: str, network: str, mask: str) -> bool:
    """
    Check whether ip lies in the network given by network/mask.

    Args:
        ip: Address to test, e.g. "192.168.0.20"
        network: Any address of the network, e.g. "192.168.0.1"
        mask: Netmask, e.g. "255.255.255.0"
    """
    try:
        net = ipaddress.IPv4Network(f"{network}/{mask}", strict=False)
        return ipaddress.IPv4Address(ip) in net
    except ValueError:
        return False


def list_ipv4_interfaces() -> InterfaceTable:
    """
    Snapshot of this host's IPv4 interfaces.

    Returns:
        Dictionary mapping interface name to [(address, netmask), ...],
        in the order the OS reports them
    """
    table: InterfaceTable = {}
    for name, addrs in psutil.net_if_addrs().items():
        ipv4 = [(a.address, a.netmask or "255.255.255.255")
                for a in addrs if a.family == socket.AF_INET]
        if ipv4:
            table[name] = ipv4
    return table


def get_local_ip(
    peer_address: Optional[str] = None,
    interface: Optional[str] = None,
    interfaces: Optional[InterfaceTable] = None,
) -> str:
    """
    Pick a local IPv4 address suitable as a stream destination.

    Strategy, first applicable wins:
    1. interface given: the address of that interface
    2. peer_address given: the first interface whose network contains the peer
    3. otherwise: the first interface named like an ethernet/wifi adapter

    Args:
        peer_address: Address of the device that will send to us
        interface: Desired local interface name, e.g. "eth0"
        interfaces: Interface table to search (default: list_ipv4_interfaces())

    Returns:
        Local IPv4 address as string

    Raises:
        NoLocalAddressError: If no interface satisfies the chosen strategy
    """
    if interfaces is None:
        interfaces = list_ipv4_interfaces()

    for name, addrs in interfaces.items():
        for address, netmask in addrs:
            if interface:
                if name == interface:
                    logger.debug(f"Using requested interface {name}: {address}")
                    return address
            elif peer_address:
                if ip_in_range(address, peer_address, netmask):
                    logger.debug(f"Interface {name} ({address}/{netmask}) reaches {peer_address}")
                    return address
            elif name.startswith(DEFAULT_INTERFACE_PREFIXES):
                logger.debug(f"Using interface {name} by name heuristic: {address}")
                return address

    raise NoLocalAddressError(
        "Could not infer a valid IP address for this host as the destination "
        f"of the stream! Given network interface specification was '{interface or ''}'"
        + (f", device address was '{peer_address}'." if peer_address else ".")
    )
