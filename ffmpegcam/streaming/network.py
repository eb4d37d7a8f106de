# Copyright (c) 2025 ffmpegcam contributors
# This file is part of ffmpegcam.
#
# ffmpegcam is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

"""Local address lookup for the configured network interface."""

import ipaddress
import logging
import socket
from typing import List

import psutil

from ffmpegcam.streaming.errors import AddressResolutionError

PUBLIC_INTERFACE = 'public'

IPV4 = 'ipv4'
IPV6 = 'ipv6'

_FAMILIES = {
    IPV4: socket.AF_INET,
    IPV6: socket.AF_INET6,
}

_LOOPBACK = {
    IPV4: '127.0.0.1',
    IPV6: '::1',
}


def _family(address_version: str) -> int:
    try:
        return _FAMILIES[address_version]
    except KeyError:
        raise AddressResolutionError(f"Unknown address version: {address_version}") from None


def _interface_addresses(interface_name: str, family: int) -> List[str]:
    addresses = []
    for address in psutil.net_if_addrs().get(interface_name, []):
        if address.family != family:
            continue
        # strip the scope id psutil appends to link-local IPv6 addresses
        addresses.append(address.address.split('%', 1)[0])
    return addresses


def _is_public(address: str) -> bool:
    ip = ipaddress.ip_address(address)
    return not (ip.is_loopback or ip.is_link_local or ip.is_unspecified)


def interface_address(interface_name: str, address_version: str = IPV4) -> str:
    """Return the first address of an interface for an address family.

    The special interface name ``public`` selects the first address, on any
    interface, that is neither loopback nor link-local.

    Args:
        interface_name: Interface name such as ``eth0``, or ``public``
        address_version: ``ipv4`` or ``ipv6``

    Returns:
        The address as a string

    Raises:
        AddressResolutionError: If no matching address exists
    """
    family = _family(address_version)

    if interface_name == PUBLIC_INTERFACE:
        for name in psutil.net_if_addrs():
            for address in _interface_addresses(name, family):
                if _is_public(address):
                    return address
        raise AddressResolutionError(f"No public {address_version} address found")

    addresses = _interface_addresses(interface_name, family)
    if not addresses:
        raise AddressResolutionError(
            f"Interface {interface_name} has no {address_version} address"
        )
    return addresses[0]


def resolve_local_address(interface_name: str, address_version: str = IPV4) -> str:
    """Like :func:`interface_address` but never fails.

    Falls back to the public interface, then to the loopback address,
    logging every step.
    """
    try:
        return interface_address(interface_name, address_version)
    except AddressResolutionError as e:
        if interface_name == PUBLIC_INTERFACE:
            logging.error(f"{e}, falling back to loopback")
            return _LOOPBACK.get(address_version, _LOOPBACK[IPV4])
        logging.error(
            f"Unable to get {address_version} address for {interface_name}! Falling back to public."
        )

    try:
        return interface_address(PUBLIC_INTERFACE, address_version)
    except AddressResolutionError as e:
        logging.error(f"{e}, falling back to loopback")
        return _LOOPBACK.get(address_version, _LOOPBACK[IPV4])
