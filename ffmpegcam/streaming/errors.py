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

"""Exceptions raised by the streaming core."""


class StreamingError(Exception):
    """Base class for all streaming errors."""


class ConfigurationError(StreamingError):
    """The camera configuration is unusable."""


class MissingSource(ConfigurationError):
    """No ffmpeg input source is configured for a camera."""


class NoPortAvailable(StreamingError):
    """No free local port could be reserved."""


class AddressResolutionError(StreamingError):
    """A network interface has no address for the requested family."""


class StreamLimitReached(StreamingError):
    """The camera is already serving its maximum number of streams."""


class ProcessLaunchError(StreamingError):
    """The transcoder process could not be spawned."""


class ProcessFailure(StreamingError):
    """The transcoder process exited abnormally or stopped producing data."""

    def __init__(self, message: str, exit_code=None, output: str = ''):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output
