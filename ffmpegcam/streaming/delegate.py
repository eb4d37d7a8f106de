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

"""Stream session lifecycle for a single camera.

A controller drives each stream through three separate requests::

    prepare  ->  start  ->  stop
                   \\-> reconfigure (acknowledged, ignored)

``prepare`` reserves return ports and synchronization sources and keeps them
as a pending session. ``start`` turns the pending session into an ffmpeg
process and an active session. ``stop``, a failing ffmpeg or a process-wide
shutdown tear the active session down again. Requests for unknown sessions
are logged and ignored, so duplicated or late requests are harmless.
"""

import logging
from typing import Any, Callable, Dict, Optional

from ffmpegcam import settings
from ffmpegcam.config import VideoConfig, to_dict
from ffmpegcam.streaming import network
from ffmpegcam.streaming.command import (
    build_snapshot_command, build_stream_command, check_source, clamp, resolution,
    stream_parameters,
)
from ffmpegcam.streaming.errors import NoPortAvailable, ProcessFailure, ProcessLaunchError, StreamLimitReached
from ffmpegcam.streaming.ports import TRANSPORT_UDP, PortReservation, reservations as default_reservations
from ffmpegcam.streaming.process import FFmpegProcess, capture_snapshot
from ffmpegcam.streaming.protocol import (
    SUPPORTED_CRYPTO_SUITES, InvalidRequest, PrepareStreamRequest, PrepareStreamResponse,
    StartStreamRequest, StreamingRequest, StreamRequestType, StreamSetupResponse,
)
from ffmpegcam.streaming.session import (
    ActiveSession, PendingSession, SessionStore, StreamEndpoint, generate_ssrc,
)


class StreamingDelegate:
    """Negotiates, starts and stops the streams of one camera."""

    def __init__(
        self,
        name: str,
        video_config: VideoConfig,
        video_processor: Optional[str] = None,
        interface_name: str = network.PUBLIC_INTERFACE,
        on_stream_failure: Optional[Callable[[str, ProcessFailure], None]] = None,
        reservations: Optional[PortReservation] = None,
    ):
        """Initialize the delegate.

        Args:
            name: Camera name used in log messages
            video_config: Camera stream settings
            video_processor: FFmpeg executable, ``settings.FFMPEG_PATH`` if None
            interface_name: Interface whose address is handed to controllers
            on_stream_failure: Called with the session id when a running
                stream dies, so the controller can be told to forget it
            reservations: Port reservation table, the process-wide one if None

        Raises:
            MissingSource: If the camera has no source configured
        """
        check_source(video_config)

        self.name = name
        self.config = video_config
        self.video_processor = video_processor or settings.FFMPEG_PATH
        self.interface_name = interface_name or network.PUBLIC_INTERFACE
        self.on_stream_failure = on_stream_failure
        self.reservations = reservations or default_reservations
        self.sessions = SessionStore()
        self._closed = False

    def handle_snapshot_request(self, width: int, height: int) -> bytes:
        """Grab a single frame.

        Raises:
            ProcessLaunchError: If ffmpeg could not be spawned
            ProcessFailure: If no image was produced in time
        """
        command = build_snapshot_command(self.video_processor, self.config, width, height)
        size = resolution(
            self.config,
            clamp(width, self.config.max_width),
            clamp(height, self.config.max_height),
        )
        logging.info(f"[{self.name}] Snapshot at {size}")
        return capture_snapshot(command, name=self.name, debug=self.config.debug)

    def prepare_stream(self, request: PrepareStreamRequest) -> PrepareStreamResponse:
        """Negotiate transport parameters for a new session.

        A second prepare for the same session id replaces the first one.

        Raises:
            InvalidRequest: If a stream asks for an SRTP suite ffmpeg cannot produce
            StreamLimitReached: If ``max_streams`` sessions are already active
            NoPortAvailable: If no return port could be reserved
        """
        session_id = request.session_id

        if self._closed:
            raise StreamLimitReached(f"{self.name} is shutting down")

        for setup in (request.video, request.audio):
            if setup.crypto_suite not in SUPPORTED_CRYPTO_SUITES:
                raise InvalidRequest(f"Unsupported SRTP crypto suite: {setup.crypto_suite.name}")

        active = self.sessions.active_count()
        if self.config.max_streams and active >= self.config.max_streams:
            logging.warning(
                f"[{self.name}] Rejecting session {session_id}: {active} of "
                f"{self.config.max_streams} streams in use"
            )
            raise StreamLimitReached(f"{self.name} already serves {active} streams")

        local_address = network.resolve_local_address(self.interface_name, request.address_version)

        video_return_port = self.reservations.reserve(TRANSPORT_UDP, local_address)
        try:
            audio_return_port = self.reservations.reserve(TRANSPORT_UDP, local_address)
        except NoPortAvailable:
            self.reservations.release(TRANSPORT_UDP, local_address, video_return_port)
            raise

        video_ssrc = generate_ssrc()
        audio_ssrc = generate_ssrc(exclude=(video_ssrc,))

        pending = PendingSession(
            session_id=session_id,
            address=request.target_address,
            local_address=local_address,
            address_version=request.address_version,
            video=StreamEndpoint(
                port=request.video.port,
                return_port=video_return_port,
                crypto_suite=request.video.crypto_suite,
                srtp=request.video.srtp_key + request.video.srtp_salt,
                ssrc=video_ssrc,
            ),
            audio=StreamEndpoint(
                port=request.audio.port,
                return_port=audio_return_port,
                crypto_suite=request.audio.crypto_suite,
                srtp=request.audio.srtp_key + request.audio.srtp_salt,
                ssrc=audio_ssrc,
            ),
        )

        previous = self.sessions.put_pending(pending)
        if previous:
            logging.debug(f"[{self.name}] Session {session_id} negotiated again, dropping previous ports")
            self._release_ports(previous)

        if self.sessions.closed:
            # shut down while negotiating
            self.sessions.remove(session_id)
            self._release_ports(pending)
            raise StreamLimitReached(f"{self.name} is shutting down")

        logging.debug(
            f"[{self.name}] Prepared session {session_id} for {request.target_address} "
            f"(return ports {video_return_port}/{audio_return_port} on {local_address})"
        )

        return PrepareStreamResponse(
            address=local_address,
            video=StreamSetupResponse(
                port=video_return_port,
                ssrc=video_ssrc,
                srtp_key=request.video.srtp_key,
                srtp_salt=request.video.srtp_salt,
            ),
            audio=StreamSetupResponse(
                port=audio_return_port,
                ssrc=audio_ssrc,
                srtp_key=request.audio.srtp_key,
                srtp_salt=request.audio.srtp_salt,
            ),
        )

    def handle_stream_request(self, request: StreamingRequest):
        if request.type == StreamRequestType.START:
            self.start_stream(request.session_id, request.start)
        elif request.type == StreamRequestType.RECONFIGURE:
            self.reconfigure_stream(request.session_id, request.video)
        elif request.type == StreamRequestType.STOP:
            self.stop_stream(request.session_id)

    def start_stream(self, session_id: str, request: StartStreamRequest):
        """Start streaming a prepared session.

        Returns as soon as ffmpeg is launched; use the process'
        ``wait_started`` to wait for the first frame.

        Raises:
            ProcessLaunchError: If ffmpeg could not be spawned
        """
        if self._closed:
            logging.debug(f"[{self.name}] Ignoring start for {session_id} during shutdown")
            return

        def build(pending: PendingSession) -> ActiveSession:
            command = build_stream_command(self.video_processor, self.config, pending, request)
            process = FFmpegProcess(
                self.name,
                session_id,
                command,
                on_failure=self._on_process_failure,
                debug=self.config.debug,
                return_port=pending.video.return_port,
                address_version=pending.address_version,
                debug_return=self.config.debug_return,
            )
            return ActiveSession(
                session_id=session_id,
                process=process,
                return_port=pending.video.return_port,
            )

        session = self.sessions.activate(session_id, build)
        if session is None:
            if self.sessions.closed:
                logging.debug(f"[{self.name}] Ignoring start for {session_id} during shutdown")
            else:
                logging.debug(f"[{self.name}] No pending session {session_id}, ignoring start")
            return

        params = stream_parameters(self.config, request)
        logging.info(
            f"[{self.name}] Starting video stream ({params.width}x{params.height}, {params.fps} fps, "
            f"{params.video_bitrate} kbps, {params.mtu} mtu)..."
            + (" (debug enabled)" if self.config.debug else "")
        )

        try:
            session.process.start()
        except ProcessLaunchError:
            if self.sessions.get_active(session_id) is session:
                self.sessions.remove(session_id)
            raise

    def reconfigure_stream(self, session_id: str, video: Optional[Dict[str, Any]] = None):
        # mid-stream changes are not applied; the running ffmpeg keeps its settings
        logging.debug(f"[{self.name}] Received (unsupported) request to reconfigure {session_id} to: {video}")

    def stop_stream(self, session_id: str):
        """Stop a session in whatever state it is. Never raises."""
        session = self.sessions.remove(session_id)
        if session is None:
            logging.debug(f"[{self.name}] No active session {session_id} to stop")
            return

        self._stop_process(session)

    def shutdown(self):
        """Stop every stream of this camera."""
        self._closed = True

        # starts racing with this find the store closed and launch nothing
        pending, active = self.sessions.close()

        for session in pending:
            self._release_ports(session)

        for session in active:
            self._stop_process(session)

    def status(self) -> Dict[str, Any]:
        streams = {}
        for session_id in self.sessions.active_ids():
            session = self.sessions.get_active(session_id)
            if session is None:
                continue
            streams[session_id] = {
                'pid': session.process.pid,
                'state': session.process.state.value,
                'return_port': session.return_port,
                'started_at': session.started_at,
            }

        pending = {}
        for session_id in self.sessions.pending_ids():
            session = self.sessions.get_pending(session_id)
            if session is None:
                continue
            pending[session_id] = {
                'address': session.address,
                'created_at': session.created_at,
            }

        return {
            'name': self.name,
            'active': streams,
            'pending': pending,
            'config': to_dict(self.config),
        }

    def _on_process_failure(self, session_id: str, error: ProcessFailure):
        logging.error(f"[{self.name}] Stream {session_id} failed: {error}")
        self.stop_stream(session_id)

        if self.on_stream_failure:
            self.on_stream_failure(session_id, error)

    def _stop_process(self, session: ActiveSession):
        try:
            session.process.stop()
        except Exception as e:
            logging.error(f"[{self.name}] Error occurred terminating the video process: {e}", exc_info=True)

        logging.info(f"[{self.name}] Stopped video stream.")

    def _release_ports(self, session: PendingSession):
        for endpoint in (session.video, session.audio):
            self.reservations.release(TRANSPORT_UDP, session.local_address, endpoint.return_port)
