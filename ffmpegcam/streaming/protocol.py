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

"""Stream negotiation messages exchanged with the controller.

These mirror what the session negotiation layer hands to a camera: a
prepare request carrying the controller's ports and SRTP material, a
prepare response echoing our return ports and synchronization sources, and
start/reconfigure/stop requests carrying the selected stream parameters.
"""

import base64
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Optional

from ffmpegcam.streaming.errors import StreamingError


class SRTPCryptoSuite(IntEnum):
    """SRTP crypto suites a controller may select."""
    AES_CM_128_HMAC_SHA1_80 = 0
    AES_CM_256_HMAC_SHA1_80 = 1
    NONE = 2


# suites ffmpeg's srtp muxer can produce
SUPPORTED_CRYPTO_SUITES = frozenset((SRTPCryptoSuite.AES_CM_128_HMAC_SHA1_80, SRTPCryptoSuite.NONE))


class StreamRequestType(Enum):
    START = "start"
    RECONFIGURE = "reconfigure"
    STOP = "stop"


class InvalidRequest(StreamingError):
    """A request body is missing fields or has the wrong types."""


def _require(data: Dict[str, Any], key: str) -> Any:
    try:
        return data[key]
    except (KeyError, TypeError):
        raise InvalidRequest(f"Missing field: {key}") from None


def _decode_bytes(value: Any, key: str) -> bytes:
    if isinstance(value, bytes):
        return value
    try:
        return base64.b64decode(value, validate=True)
    except (TypeError, ValueError):
        raise InvalidRequest(f"Field {key} is not valid base64") from None


def _int(data: Dict[str, Any], key: str, default: Optional[int] = None) -> int:
    value = data.get(key, default) if isinstance(data, dict) else default
    if value is None:
        raise InvalidRequest(f"Missing field: {key}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"Field {key} must be an integer") from None


@dataclass
class StreamSetup:
    """Per-stream parameters offered by the controller in a prepare request."""
    port: int
    crypto_suite: SRTPCryptoSuite
    srtp_key: bytes
    srtp_salt: bytes

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StreamSetup':
        try:
            suite = SRTPCryptoSuite(_int(data, 'srtpCryptoSuite', 0))
        except ValueError:
            raise InvalidRequest("Unsupported SRTP crypto suite") from None
        if suite not in SUPPORTED_CRYPTO_SUITES:
            raise InvalidRequest(f"Unsupported SRTP crypto suite: {suite.name}")
        return cls(
            port=_int(data, 'port'),
            crypto_suite=suite,
            srtp_key=_decode_bytes(_require(data, 'srtpKey'), 'srtpKey'),
            srtp_salt=_decode_bytes(_require(data, 'srtpSalt'), 'srtpSalt'),
        )


@dataclass
class PrepareStreamRequest:
    session_id: str
    target_address: str
    video: StreamSetup
    audio: StreamSetup
    address_version: str = "ipv4"

    @classmethod
    def from_dict(cls, session_id: str, data: Dict[str, Any]) -> 'PrepareStreamRequest':
        version = data.get('addressVersion', 'ipv4')
        if version not in ('ipv4', 'ipv6'):
            raise InvalidRequest(f"Unsupported address version: {version}")
        return cls(
            session_id=session_id,
            target_address=str(_require(data, 'targetAddress')),
            video=StreamSetup.from_dict(_require(data, 'video')),
            audio=StreamSetup.from_dict(_require(data, 'audio')),
            address_version=version,
        )


@dataclass
class StreamSetupResponse:
    """Per-stream parameters echoed back to the controller."""
    port: int
    ssrc: int
    srtp_key: bytes
    srtp_salt: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            'port': self.port,
            'ssrc': self.ssrc,
            'srtpKey': base64.b64encode(self.srtp_key).decode('ascii'),
            'srtpSalt': base64.b64encode(self.srtp_salt).decode('ascii'),
        }


@dataclass
class PrepareStreamResponse:
    address: str
    video: StreamSetupResponse
    audio: StreamSetupResponse

    def to_dict(self) -> Dict[str, Any]:
        return {
            'address': self.address,
            'video': self.video.to_dict(),
            'audio': self.audio.to_dict(),
        }


@dataclass
class VideoInfo:
    """Video parameters selected by the controller for a stream."""
    width: int
    height: int
    fps: int
    pt: int
    max_bit_rate: int
    mtu: int = 1378

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VideoInfo':
        return cls(
            width=_int(data, 'width'),
            height=_int(data, 'height'),
            fps=_int(data, 'fps'),
            pt=_int(data, 'pt', 99),
            max_bit_rate=_int(data, 'maxBitRate'),
            mtu=_int(data, 'mtu', 1378),
        )


@dataclass
class AudioInfo:
    """Audio parameters selected by the controller for a stream."""
    sample_rate: int = 16
    pt: int = 110
    max_bit_rate: int = 24
    channel: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AudioInfo':
        return cls(
            sample_rate=_int(data, 'sampleRate', 16),
            pt=_int(data, 'pt', 110),
            max_bit_rate=_int(data, 'maxBitRate', 24),
            channel=_int(data, 'channel', 1),
        )


@dataclass
class StartStreamRequest:
    video: VideoInfo
    audio: AudioInfo = field(default_factory=AudioInfo)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StartStreamRequest':
        audio = data.get('audio') if isinstance(data, dict) else None
        return cls(
            video=VideoInfo.from_dict(_require(data, 'video')),
            audio=AudioInfo.from_dict(audio) if audio else AudioInfo(),
        )


@dataclass
class StreamingRequest:
    """A start, reconfigure or stop request for a negotiated session."""
    session_id: str
    type: StreamRequestType
    start: Optional[StartStreamRequest] = None
    video: Optional[Dict[str, Any]] = None
