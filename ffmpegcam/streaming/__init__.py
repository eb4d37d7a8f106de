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

"""Camera streaming package for ffmpegcam.

Negotiates SRTP stream sessions with a controller and relays each camera to
it through an ffmpeg process:

- per-session return port reservation and SSRC generation
- ffmpeg command lines for SRTP streams and still snapshots
- supervision of ffmpeg, including startup and return-traffic timeouts
- clean teardown on stop, failure and shutdown
"""

from ffmpegcam.streaming.errors import (
    AddressResolutionError, ConfigurationError, MissingSource, NoPortAvailable,
    ProcessFailure, ProcessLaunchError, StreamingError, StreamLimitReached,
)


def start(config_path=None):
    """Start streaming for all configured cameras (lazy import to avoid circular dependencies)."""
    from ffmpegcam.streaming import integration
    integration.start(config_path)


def stop():
    """Stop every stream of every camera."""
    from ffmpegcam.streaming import integration
    integration.stop()


def is_running():
    from ffmpegcam.streaming import integration
    return integration.is_running()


__all__ = [
    'AddressResolutionError',
    'ConfigurationError',
    'MissingSource',
    'NoPortAvailable',
    'ProcessFailure',
    'ProcessLaunchError',
    'StreamingError',
    'StreamLimitReached',
    'start',
    'stop',
    'is_running',
]
