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

"""Local port reservation for RTP return channels.

Ports are probed by binding a throwaway socket to port 0 and letting the
kernel pick a free one. The picked port is then remembered for a short
while so that two sessions negotiating at the same time never receive the
same port before either of them has actually bound it.
"""

import logging
import socket
import threading
import time
from typing import Dict, Optional, Tuple

from ffmpegcam.streaming.errors import NoPortAvailable

# seconds a reservation is held when nobody releases it
RESERVE_TIMEOUT = 15.0

MAX_PROBE_ATTEMPTS = 20

TRANSPORT_UDP = 'udp'
TRANSPORT_TCP = 'tcp'

_SOCKET_TYPES = {
    TRANSPORT_UDP: socket.SOCK_DGRAM,
    TRANSPORT_TCP: socket.SOCK_STREAM,
}


def address_family(address: str) -> int:
    """Return the socket family matching a literal IP address."""
    return socket.AF_INET6 if ':' in address else socket.AF_INET


class PortReservation:
    """Thread-safe table of recently handed out ports."""

    def __init__(
        self,
        reserve_timeout: float = RESERVE_TIMEOUT,
        max_attempts: int = MAX_PROBE_ATTEMPTS,
    ):
        self.reserve_timeout = reserve_timeout
        self.max_attempts = max_attempts
        self._reserved: Dict[Tuple[str, str, int], float] = {}
        self._lock = threading.Lock()

    def reserve(self, transport_type: str, local_address: str) -> int:
        """Reserve a free port on a local address.

        Args:
            transport_type: ``udp`` or ``tcp``
            local_address: Address the port will later be bound on

        Returns:
            A port that was free at call time

        Raises:
            NoPortAvailable: If no port could be found within the probe limit
        """
        sock_type = _SOCKET_TYPES.get(transport_type)
        if sock_type is None:
            raise ValueError(f"Unknown transport type: {transport_type}")

        for _ in range(self.max_attempts):
            port = self._probe(sock_type, local_address)
            if port is None:
                continue

            with self._lock:
                self._expire()
                key = (transport_type, local_address, port)
                if key in self._reserved:
                    logging.debug(f"Port {port} already reserved, probing again")
                    continue
                self._reserved[key] = time.monotonic() + self.reserve_timeout

            logging.debug(f"Reserved {transport_type} port {local_address}:{port}")
            return port

        raise NoPortAvailable(
            f"No free {transport_type} port on {local_address} after {self.max_attempts} attempts"
        )

    def is_reserved(self, transport_type: str, local_address: str, port: int) -> bool:
        with self._lock:
            self._expire()
            return (transport_type, local_address, port) in self._reserved

    def release(self, transport_type: str, local_address: str, port: int):
        with self._lock:
            self._reserved.pop((transport_type, local_address, port), None)

    def clear(self):
        with self._lock:
            self._reserved.clear()

    def _expire(self):
        now = time.monotonic()
        expired = [key for key, expiry in self._reserved.items() if expiry <= now]
        for key in expired:
            del self._reserved[key]

    @staticmethod
    def _probe(sock_type: int, local_address: str) -> Optional[int]:
        try:
            sock = socket.socket(address_family(local_address), sock_type)
        except OSError as e:
            logging.debug(f"Could not create probe socket for {local_address}: {e}")
            return None

        try:
            sock.bind((local_address, 0))
            return sock.getsockname()[1]
        except OSError as e:
            logging.debug(f"Could not bind probe socket on {local_address}: {e}")
            return None
        finally:
            sock.close()


# Process-wide table shared by every camera
reservations = PortReservation()


def reserve(transport_type: str, local_address: str) -> int:
    return reservations.reserve(transport_type, local_address)


def is_reserved(transport_type: str, local_address: str, port: int) -> bool:
    return reservations.is_reserved(transport_type, local_address, port)


def release(transport_type: str, local_address: str, port: int):
    reservations.release(transport_type, local_address, port)
