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

"""Camera configuration.

The configuration file is JSON in the layout used by the homebridge ffmpeg
camera platform::

    {
        "videoProcessor": "/usr/bin/ffmpeg",
        "interfaceName": "eth0",
        "cameras": [
            {
                "name": "Front Door",
                "videoConfig": {
                    "source": "-rtsp_transport tcp -i rtsp://10.0.0.5/stream",
                    "maxWidth": 1920,
                    "maxBitrate": 800
                }
            }
        ]
    }

Every optional value is resolved to its effective default when the file is
loaded, so the rest of the code never has to deal with missing keys.
"""

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ffmpegcam.streaming.errors import ConfigurationError

PRESERVE_WIDTH = 'W'
PRESERVE_HEIGHT = 'H'

DEFAULT_ADDITIONAL_COMMANDLINE = '-preset ultrafast -tune zerolatency'


@dataclass(frozen=True)
class VideoConfig:
    """Immutable stream settings of one camera."""
    source: Optional[str] = None
    still_image_source: Optional[str] = None
    vcodec: str = 'libx264'
    packet_size: Optional[int] = 1316
    max_width: int = 1280
    max_height: int = 720
    max_fps: int = 10
    max_bitrate: int = 299  # kbps
    min_bitrate: int = 0  # kbps, 0 disables the floor
    max_streams: int = 2
    force_max: bool = False
    additional_commandline: str = DEFAULT_ADDITIONAL_COMMANDLINE
    audio: bool = False
    video_filter: Optional[str] = None
    vflip: bool = False
    hflip: bool = False
    map_video: str = '0:0'
    map_audio: str = '0:1'
    preserve_ratio: Optional[str] = None
    debug: bool = False
    debug_return: bool = False

    def __post_init__(self):
        if self.max_bitrate and self.min_bitrate > self.max_bitrate:
            object.__setattr__(self, 'min_bitrate', self.max_bitrate)
        if self.preserve_ratio not in (None, PRESERVE_WIDTH, PRESERVE_HEIGHT):
            raise ConfigurationError(f"preserveRatio must be 'W' or 'H', got {self.preserve_ratio!r}")


@dataclass(frozen=True)
class CameraConfig:
    name: str
    video_config: VideoConfig = field(default_factory=VideoConfig)


@dataclass(frozen=True)
class PlatformConfig:
    video_processor: Optional[str] = None
    interface_name: str = 'public'
    cameras: Tuple[CameraConfig, ...] = ()


# camelCase key in the file -> (field name, expected type)
_VIDEO_KEYS: Dict[str, Tuple[str, type]] = {
    'source': ('source', str),
    'stillImageSource': ('still_image_source', str),
    'vcodec': ('vcodec', str),
    'packetSize': ('packet_size', int),
    'maxWidth': ('max_width', int),
    'maxHeight': ('max_height', int),
    'maxFPS': ('max_fps', int),
    'maxBitrate': ('max_bitrate', int),
    'minBitrate': ('min_bitrate', int),
    'maxStreams': ('max_streams', int),
    'forceMax': ('force_max', bool),
    'encoderOptions': ('additional_commandline', str),
    'additionalCommandline': ('additional_commandline', str),
    'audio': ('audio', bool),
    'videoFilter': ('video_filter', str),
    'vflip': ('vflip', bool),
    'hflip': ('hflip', bool),
    'mapvideo': ('map_video', str),
    'mapaudio': ('map_audio', str),
    'preserveRatio': ('preserve_ratio', str),
    'debug': ('debug', bool),
    'debugReturn': ('debug_return', bool),
}


def _check_type(key: str, value: Any, expected: type) -> Any:
    if expected is int:
        # bool is an int subclass but never a valid number here
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"{key} must be an integer, got {value!r}")
    elif not isinstance(value, expected):
        raise ConfigurationError(f"{key} must be of type {expected.__name__}, got {value!r}")
    return value


def parse_video_config(data: Dict[str, Any]) -> VideoConfig:
    """Build a :class:`VideoConfig` from its JSON representation."""
    if not isinstance(data, dict):
        raise ConfigurationError("videoConfig must be an object")

    values: Dict[str, Any] = {}
    for key, value in data.items():
        mapping = _VIDEO_KEYS.get(key)
        if mapping is None:
            logging.debug(f"ignoring unknown videoConfig option {key}")
            continue
        if value is None:
            continue
        name, expected = mapping
        # additionalCommandline wins over its older encoderOptions alias
        if key == 'encoderOptions' and 'additionalCommandline' in data:
            continue
        values[name] = _check_type(key, value, expected)

    if values.get('packet_size') == 0:
        values['packet_size'] = None

    return VideoConfig(**values)


def parse_camera_config(data: Dict[str, Any]) -> CameraConfig:
    if not isinstance(data, dict):
        raise ConfigurationError("camera entries must be objects")
    name = data.get('name')
    if not name or not isinstance(name, str):
        raise ConfigurationError("camera is missing a name")
    return CameraConfig(
        name=name,
        video_config=parse_video_config(data.get('videoConfig') or {}),
    )


def parse_platform_config(data: Dict[str, Any]) -> PlatformConfig:
    """Build a :class:`PlatformConfig` from the decoded config file.

    Cameras that fail to parse are logged and left out.
    """
    if not isinstance(data, dict):
        raise ConfigurationError("configuration must be an object")

    cameras: List[CameraConfig] = []
    for index, entry in enumerate(data.get('cameras') or []):
        try:
            cameras.append(parse_camera_config(entry))
        except ConfigurationError as e:
            logging.error(f"skipping camera #{index}: {e}")

    video_processor = data.get('videoProcessor') or None
    interface_name = data.get('interfaceName') or 'public'
    for key, value in (('videoProcessor', video_processor), ('interfaceName', interface_name)):
        if value is not None and not isinstance(value, str):
            raise ConfigurationError(f"{key} must be a string")

    return PlatformConfig(
        video_processor=video_processor,
        interface_name=interface_name,
        cameras=tuple(cameras),
    )


def load(path: str) -> PlatformConfig:
    """Read and parse the configuration file at ``path``."""
    try:
        with open(path) as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigurationError(f"could not read config file '{path}': {e}") from e
    except ValueError as e:
        raise ConfigurationError(f"config file '{path}' is not valid JSON: {e}") from e

    return parse_platform_config(data)


def to_dict(video_config: VideoConfig) -> Dict[str, Any]:
    """Return the effective settings of a camera, keyed by field name."""
    return dataclasses.asdict(video_config)
