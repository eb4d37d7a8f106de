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

"""Per-camera stream session bookkeeping."""

import base64
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ffmpegcam.streaming.protocol import SRTPCryptoSuite


def generate_ssrc(exclude=()) -> int:
    """Generate a random RTP synchronization source.

    The top byte is always zero so the value stays positive when ffmpeg
    parses it as a signed 32-bit integer.
    """
    while True:
        ssrc = random.randint(1, 0x00FFFFFF)
        if ssrc not in exclude:
            return ssrc


@dataclass
class StreamEndpoint:
    """Negotiated transport state for one media stream of a session."""
    port: int  # controller side
    return_port: int  # our side
    crypto_suite: SRTPCryptoSuite
    srtp: bytes  # key and salt concatenated
    ssrc: int

    @property
    def srtp_params(self) -> str:
        return base64.b64encode(self.srtp).decode('ascii')


@dataclass
class PendingSession:
    """A negotiated session that is not streaming yet."""
    session_id: str
    address: str  # controller
    local_address: str
    video: StreamEndpoint
    audio: StreamEndpoint
    address_version: str = "ipv4"
    created_at: float = field(default_factory=time.time)


@dataclass
class ActiveSession:
    """A streaming session and the transcoder process it owns."""
    session_id: str
    process: Any  # FFmpegProcess
    return_port: int
    started_at: float = field(default_factory=time.time)


class SessionStore:
    """Pending and active sessions of a single camera.

    A session id lives in at most one of the two maps. All methods are safe
    to call from different threads.
    """

    def __init__(self):
        self.pending: Dict[str, PendingSession] = {}
        self.active: Dict[str, ActiveSession] = {}
        self.closed = False
        self._lock = threading.RLock()

    def put_pending(self, session: PendingSession) -> Optional[PendingSession]:
        """Store a pending session, replacing any previous one.

        Returns:
            The replaced pending session, if any
        """
        with self._lock:
            previous = self.pending.get(session.session_id)
            self.pending[session.session_id] = session
            return previous

    def get_pending(self, session_id: str) -> Optional[PendingSession]:
        with self._lock:
            return self.pending.get(session_id)

    def get_active(self, session_id: str) -> Optional[ActiveSession]:
        with self._lock:
            return self.active.get(session_id)

    def promote(self, session_id: str) -> Optional[PendingSession]:
        """Take a pending session out of the store.

        The caller is expected to insert the resulting active session.
        """
        with self._lock:
            return self.pending.pop(session_id, None)

    def activate(
        self,
        session_id: str,
        build: Callable[[PendingSession], ActiveSession],
    ) -> Optional[ActiveSession]:
        """Promote a pending session to active in one step.

        Args:
            session_id: Session identifier
            build: Turns the pending session into its active counterpart

        Returns:
            The new active session, or None if nothing was pending or the
            store was closed
        """
        with self._lock:
            if self.closed:
                return None
            pending = self.promote(session_id)
            if pending is None:
                return None
            try:
                session = build(pending)
            except Exception:
                # leave the store as it was
                self.pending[session_id] = pending
                raise
            if self.closed:
                # closed while building, the session was never started
                return None
            self.active[session_id] = session
            return session

    def remove(self, session_id: str) -> Optional[ActiveSession]:
        """Forget a session entirely. Unknown ids are ignored.

        Returns:
            The removed active session, if there was one
        """
        with self._lock:
            pending = self.pending.pop(session_id, None)
            active = self.active.pop(session_id, None)
        if pending or active:
            logging.debug(f"Removed session {session_id}")
        return active

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self.active.keys())

    def pending_ids(self) -> List[str]:
        with self._lock:
            return list(self.pending.keys())

    def active_count(self) -> int:
        with self._lock:
            return len(self.active)

    def close(self) -> Tuple[List[PendingSession], List[ActiveSession]]:
        """Empty the store and refuse further activations.

        Returns:
            The pending and active sessions that were still stored
        """
        with self._lock:
            self.closed = True
            pending = list(self.pending.values())
            active = list(self.active.values())
            self.pending.clear()
            self.active.clear()
        return pending, active
