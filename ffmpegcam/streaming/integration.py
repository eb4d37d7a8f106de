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

"""Glue between the configuration file and the per-camera delegates.

One :class:`StreamingDelegate` is created for every configured camera.
Cameras whose configuration is unusable are logged and skipped, the others
keep working.
"""

import collections
import logging
import threading
import time
from typing import Any, Dict, List, Optional

from ffmpegcam import config, settings
from ffmpegcam.streaming.delegate import StreamingDelegate
from ffmpegcam.streaming.errors import ConfigurationError, ProcessFailure

# Global state
_delegates: Dict[str, StreamingDelegate] = {}
_failures = collections.deque(maxlen=50)
_lock = threading.Lock()
_running = False


def is_running() -> bool:
    return _running


def start(config_path: Optional[str] = None):
    """Load the configuration and set up every camera.

    Args:
        config_path: Configuration file, ``settings.CONFIG_FILE`` if None

    Raises:
        ConfigurationError: If the configuration file itself is unusable
    """
    global _running

    if _running:
        logging.debug("streaming already running")
        return

    path = config_path or settings.CONFIG_FILE
    platform = config.load(path)
    logging.info(f"loaded {len(platform.cameras)} camera(s) from {path}")

    delegates = {}
    for camera in platform.cameras:
        if camera.name in delegates:
            logging.error(f"duplicate camera name {camera.name}, skipping")
            continue
        try:
            delegates[camera.name] = _create_delegate(camera, platform)
        except ConfigurationError as e:
            logging.error(f"[{camera.name}] {e} Camera not registered.")
            continue
        logging.info(f"[{camera.name}] camera registered")

    with _lock:
        _delegates.clear()
        _delegates.update(delegates)
        _running = True


def stop():
    """Stop all active streams. Called once when the process terminates."""
    global _running

    with _lock:
        delegates = list(_delegates.values())
        _delegates.clear()
        _running = False

    for delegate in delegates:
        try:
            delegate.shutdown()
        except Exception as e:
            logging.error(f"[{delegate.name}] error during shutdown: {e}", exc_info=True)

    if delegates:
        logging.info("all streams stopped")


def _create_delegate(camera: config.CameraConfig, platform: config.PlatformConfig) -> StreamingDelegate:
    def on_stream_failure(session_id: str, error: ProcessFailure):
        _failures.append({
            'camera': camera.name,
            'session_id': session_id,
            'error': str(error),
            'exit_code': error.exit_code,
            'time': time.time(),
        })

    return StreamingDelegate(
        camera.name,
        camera.video_config,
        video_processor=platform.video_processor,
        interface_name=platform.interface_name,
        on_stream_failure=on_stream_failure,
    )


def get_delegate(name: str) -> Optional[StreamingDelegate]:
    with _lock:
        return _delegates.get(name)


def get_failures() -> List[Dict[str, Any]]:
    """Return recent stream failures, oldest first."""
    return list(_failures)


def get_status() -> Dict[str, Any]:
    with _lock:
        delegates = list(_delegates.values())

    return {
        'running': _running,
        'cameras': [delegate.status() for delegate in delegates],
        'failures': get_failures(),
    }
