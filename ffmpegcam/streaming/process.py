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

"""Supervision of the ffmpeg processes backing snapshots and streams."""

import collections
import logging
import re
import socket
import subprocess
import threading
import time
from enum import Enum
from typing import Callable, List, Optional

from ffmpegcam import settings
from ffmpegcam.streaming.errors import ProcessFailure, ProcessLaunchError

_ERROR_LINE = re.compile(r'\[(panic|fatal|error)\]')

# stderr lines kept for failure reports
_OUTPUT_LINES = 50


def _iter_lines(stream):
    """Yield lines from a binary stream, treating \\r as a line break.

    ffmpeg ends its progress line with a carriage return so it can redraw it
    in place.
    """
    buffer = b''
    while True:
        chunk = stream.read1(4096)
        if not chunk:
            break
        buffer += chunk
        parts = re.split(rb'[\r\n]', buffer)
        buffer = parts.pop()
        yield from parts
    if buffer:
        yield buffer


class ProcessState(Enum):
    STARTING = "starting"
    ACTIVE = "active"
    STOPPED = "stopped"
    FAILED = "failed"


class ReturnPortMonitor:
    """Watches the return port for RTCP traffic from the controller.

    A controller that goes away without sending a stop request also stops
    sending receiver reports; prolonged silence is reported through
    ``on_timeout``.
    """

    def __init__(
        self,
        name: str,
        port: int,
        on_timeout: Callable[[], None],
        timeout: float = 5.0,
        initial_timeout: Optional[float] = None,
        address_version: str = "ipv4",
        debug: bool = False,
    ):
        self.name = name
        self.port = port
        self.on_timeout = on_timeout
        self.timeout = timeout
        self.initial_timeout = max(timeout, initial_timeout or 0)
        self.address_version = address_version
        self.debug = debug
        self.packets = 0

        self._socket: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def start(self) -> bool:
        """Bind the return port and start watching.

        Returns:
            True if the port could be bound
        """
        if self.address_version == "ipv6":
            family, bind_address = socket.AF_INET6, '::'
        else:
            family, bind_address = socket.AF_INET, ''

        try:
            self._socket = socket.socket(family, socket.SOCK_DGRAM)
            self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._socket.bind((bind_address, self.port))
            self._socket.settimeout(0.5)
        except OSError as e:
            logging.warning(f"[{self.name}] Could not watch return port {self.port}: {e}")
            self._close()
            return False

        self._running = True
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"return-port-{self.port}",
        )
        self._thread.start()
        return True

    def stop(self):
        self._running = False
        thread = self._thread
        self._thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=2)
        self._close()

    def _close(self):
        if self._socket:
            try:
                self._socket.close()
            except OSError:
                pass
            self._socket = None

    def _run(self):
        deadline = time.monotonic() + self.initial_timeout
        sock = self._socket
        if sock is None:
            return

        while self._running:
            try:
                data, sender = sock.recvfrom(2048)
            except socket.timeout:
                data = None
            except OSError:
                break

            if data is not None:
                self.packets += 1
                deadline = time.monotonic() + self.timeout
                if self.debug:
                    logging.info(f"[{self.name}] {len(data)} bytes on return port from {sender[0]}")
                continue

            if time.monotonic() > deadline:
                if self._running:
                    logging.info(f"[{self.name}] Device appears to be inactive. Stopping stream.")
                    self._running = False
                    self.on_timeout()
                break


class FFmpegProcess:
    """Owns the ffmpeg process of one active stream.

    The process starts in ``STARTING`` and becomes ``ACTIVE`` once its
    diagnostic output shows the readiness marker. It ends in ``STOPPED`` when
    :meth:`stop` is called, or in ``FAILED`` when it exits on its own, does not
    become ready in time, or the controller stops sending return traffic. A
    failure is reported exactly once through ``on_failure``; nothing is
    retried.
    """

    def __init__(
        self,
        name: str,
        session_id: str,
        command: List[str],
        on_failure: Optional[Callable[[str, ProcessFailure], None]] = None,
        debug: bool = False,
        return_port: Optional[int] = None,
        address_version: str = "ipv4",
        debug_return: bool = False,
        startup_timeout: Optional[float] = None,
        stop_timeout: Optional[float] = None,
        liveness_timeout: Optional[float] = None,
        ready_marker: Optional[str] = None,
    ):
        self.name = name
        self.session_id = session_id
        self.command = command
        self.on_failure = on_failure
        self.debug = debug
        self.return_port = return_port
        self.address_version = address_version
        self.debug_return = debug_return
        self.startup_timeout = startup_timeout if startup_timeout is not None \
            else settings.STARTUP_TIMEOUT
        self.stop_timeout = stop_timeout if stop_timeout is not None \
            else settings.STOP_TIMEOUT
        self.liveness_timeout = liveness_timeout if liveness_timeout is not None \
            else settings.LIVENESS_TIMEOUT
        self.ready_marker = re.compile(ready_marker or settings.READY_MARKER)

        self.state = ProcessState.STARTING
        self.output = collections.deque(maxlen=_OUTPUT_LINES)

        self._process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()
        self._started = threading.Event()
        self._finished = threading.Event()
        self._reported = False
        self._start_time = 0.0
        self._stderr_thread: Optional[threading.Thread] = None
        self._watch_thread: Optional[threading.Thread] = None
        self._startup_timer: Optional[threading.Timer] = None
        self._monitor: Optional[ReturnPortMonitor] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    def start(self):
        """Launch ffmpeg.

        Does nothing if the process was stopped before it got started.

        Raises:
            ProcessLaunchError: If the executable could not be spawned
        """
        with self._lock:
            if self.state != ProcessState.STARTING or self._process:
                logging.debug(f"[{self.name}] Not starting ffmpeg for session {self.session_id} ({self.state.value})")
                return

            if self.debug:
                logging.info(f"[{self.name}] Stream command: {' '.join(self.command)}")

            self._start_time = time.monotonic()
            try:
                self._process = subprocess.Popen(
                    self.command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.PIPE,
                )
            except (OSError, ValueError) as e:
                self.state = ProcessState.FAILED
                self._reported = True
                self._finished.set()
                logging.error(f"[{self.name}] FFmpeg process creation failed: {e}")
                raise ProcessLaunchError(f"FFmpeg process creation failed: {e}") from e

            self._stderr_thread = threading.Thread(
                target=self._read_stderr,
                daemon=True,
                name=f"ffmpeg-stderr-{self.session_id}",
            )
            self._watch_thread = threading.Thread(
                target=self._watch,
                daemon=True,
                name=f"ffmpeg-watch-{self.session_id}",
            )
            self._stderr_thread.start()
            self._watch_thread.start()

            if self.startup_timeout:
                self._startup_timer = threading.Timer(self.startup_timeout, self._startup_expired)
                self._startup_timer.daemon = True
                self._startup_timer.start()

            if self.return_port:
                self._monitor = ReturnPortMonitor(
                    self.name,
                    self.return_port,
                    on_timeout=self._liveness_expired,
                    timeout=self.liveness_timeout,
                    initial_timeout=self.startup_timeout,
                    address_version=self.address_version,
                    debug=self.debug_return,
                )
                self._monitor.start()

        logging.debug(f"[{self.name}] FFmpeg started for session {self.session_id} (pid {self.pid})")

    def wait_started(self, timeout: Optional[float] = None) -> bool:
        """Block until ffmpeg reports its first frame.

        Returns:
            True if the stream became active within ``timeout``
        """
        self._started.wait(timeout)
        return self.state == ProcessState.ACTIVE

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the process has exited and been accounted for."""
        return self._finished.wait(timeout)

    def stop(self):
        """Terminate ffmpeg, gracefully first and forcefully after a grace period.

        Safe to call more than once and before :meth:`start`.
        """
        with self._lock:
            if self.state == ProcessState.STOPPED:
                return
            if self.state != ProcessState.FAILED:
                self.state = ProcessState.STOPPED
            self._reported = True
            process = self._process
            if process is None:
                self._finished.set()

        self._cleanup_watchers()

        if process is None:
            return

        self._terminate(process)

        for thread in (self._stderr_thread, self._watch_thread):
            if thread and thread is not threading.current_thread():
                thread.join(timeout=2)

    def _terminate(self, process: subprocess.Popen):
        if process.poll() is not None:
            return

        try:
            process.stdin.write(b'q\n')
            process.stdin.flush()
        except (OSError, ValueError):
            pass

        try:
            process.terminate()
            process.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logging.warning(f"[{self.name}] FFmpeg did not exit in {self.stop_timeout}s, killing it")
            process.kill()
            try:
                process.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                logging.error(f"[{self.name}] FFmpeg (pid {process.pid}) survived SIGKILL")
        except OSError as e:
            logging.error(f"[{self.name}] Error stopping ffmpeg: {e}")

    def _cleanup_watchers(self):
        timer = self._startup_timer
        self._startup_timer = None
        if timer:
            timer.cancel()

        monitor = self._monitor
        self._monitor = None
        if monitor:
            monitor.stop()

    def _read_stderr(self):
        process = self._process
        for raw in _iter_lines(process.stderr):
            line = raw.decode('utf-8', errors='replace').rstrip()
            if not line:
                continue
            self.output.append(line)

            if not self._started.is_set() and self.ready_marker.search(line):
                self._mark_started()

            if self.debug:
                if _ERROR_LINE.search(line):
                    logging.error(f"[{self.name}] {line}")
                else:
                    logging.info(f"[{self.name}] {line}")
            else:
                logging.debug(f"[{self.name}] {line}")

        try:
            process.stderr.close()
        except OSError:
            pass

    def _mark_started(self):
        with self._lock:
            if self.state == ProcessState.STARTING:
                self.state = ProcessState.ACTIVE
        self._started.set()

        runtime = time.monotonic() - self._start_time
        logging.debug(f"[{self.name}] Getting the first frames took {runtime:.2f} seconds")

        timer = self._startup_timer
        if timer:
            timer.cancel()

    def _watch(self):
        process = self._process
        code = process.wait()
        if self._stderr_thread:
            self._stderr_thread.join(timeout=2)

        message = f"FFmpeg exited with code {code}"
        with self._lock:
            expected = self.state == ProcessState.STOPPED or self._reported

        if expected:
            logging.debug(f"[{self.name}] {message} (expected)")
        else:
            self._fail(message, code)

        self._started.set()
        self._finished.set()

    def _startup_expired(self):
        with self._lock:
            starting = self.state == ProcessState.STARTING
        if not starting:
            return

        self._fail(f"FFmpeg did not produce a frame within {self.startup_timeout}s", self.returncode)
        process = self._process
        if process is not None:
            self._terminate(process)

    def _liveness_expired(self):
        self._fail("No traffic from the controller on the return port", self.returncode)

    def _fail(self, message: str, code: Optional[int]):
        with self._lock:
            if self._reported:
                return
            self._reported = True
            self.state = ProcessState.FAILED

        output = '\n'.join(self.output)
        if code == 0:
            logging.info(f"[{self.name}] {message}")
        else:
            logging.error(f"[{self.name}] {message}")
        if self.debug and output:
            logging.error(f"[{self.name}] FFmpeg output:\n{output}")

        self._started.set()
        if self.on_failure:
            try:
                self.on_failure(self.session_id, ProcessFailure(message, exit_code=code, output=output))
            except Exception as e:
                logging.error(f"[{self.name}] Error handling stream failure: {e}", exc_info=True)


def capture_snapshot(
    command: List[str],
    timeout: Optional[float] = None,
    name: str = '',
    debug: bool = False,
) -> bytes:
    """Run a one-shot ffmpeg command and return what it wrote to stdout.

    Args:
        command: Argument list, see :func:`build_snapshot_command`
        timeout: Seconds to wait before the process is killed
        name: Camera name used in log messages
        debug: Log the command and ffmpeg's output

    Returns:
        The image bytes

    Raises:
        ProcessLaunchError: If ffmpeg could not be spawned
        ProcessFailure: If ffmpeg timed out or produced no image
    """
    if timeout is None:
        timeout = settings.SNAPSHOT_TIMEOUT

    if debug:
        logging.info(f"[{name}] Snapshot command: {' '.join(command)}")

    try:
        process = subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except (OSError, ValueError) as e:
        logging.error(f"[{name}] An error occurred while making snapshot request: {e}")
        raise ProcessLaunchError(f"FFmpeg process creation failed: {e}") from e

    try:
        image, errors = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        process.kill()
        process.communicate()
        logging.error(f"[{name}] Snapshot timed out after {timeout}s")
        raise ProcessFailure(f"Snapshot timed out after {timeout}s", exit_code=process.returncode)

    output = errors.decode('utf-8', errors='replace')
    if debug and output:
        logging.info(f"[{name}] {output}")

    if not image:
        message = f"FFmpeg exited with code {process.returncode} without producing an image"
        logging.error(f"[{name}] {message}")
        raise ProcessFailure(message, exit_code=process.returncode, output=output)

    return image
