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

"""Process-wide runtime settings.

Values are plain module attributes so that they can be read with
``getattr(settings, NAME, default)`` and overridden from the command line
before the streaming integration starts.
"""

import os

CONFIG_FILE = os.environ.get('FFMPEGCAM_CONFIG', 'config.json')

LISTEN = '127.0.0.1'
PORT = 8765

LOG_LEVEL = 'INFO'

# used when the config file does not name a video processor
FFMPEG_PATH = os.environ.get('FFMPEG_PATH', 'ffmpeg')

# seconds
SNAPSHOT_TIMEOUT = 10.0
STARTUP_TIMEOUT = 20.0
STOP_TIMEOUT = 2.0
LIVENESS_TIMEOUT = 5.0

# ffmpeg prints its progress line to stderr once frames are flowing
READY_MARKER = r'frame=\s*\d+'
