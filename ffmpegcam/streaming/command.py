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

"""FFmpeg command lines for snapshots and SRTP streams.

Everything here is pure: the functions only look at the camera settings and
the negotiated session, and return an argument list ready for
``subprocess.Popen``.
"""

import shlex
from dataclasses import dataclass
from typing import List, Optional

from ffmpegcam.config import PRESERVE_HEIGHT, PRESERVE_WIDTH, VideoConfig
from ffmpegcam.streaming.errors import MissingSource
from ffmpegcam.streaming.protocol import SRTPCryptoSuite, StartStreamRequest
from ffmpegcam.streaming.session import PendingSession, StreamEndpoint

COPY_CODEC = 'copy'
NO_FILTER = 'none'

AUDIO_PACKET_SIZE = 188


@dataclass
class StreamParameters:
    """Effective stream settings after applying the camera limits."""
    width: int
    height: int
    fps: int
    video_bitrate: int
    audio_bitrate: int
    mtu: int


def check_source(config: VideoConfig):
    if not config.source or not config.source.strip():
        raise MissingSource("Missing source for camera.")


def resolution(config: VideoConfig, width: int, height: int) -> str:
    """Return the ``scale`` filter argument honouring ``preserve_ratio``."""
    if config.preserve_ratio == PRESERVE_WIDTH:
        return f"{width}:-1"
    if config.preserve_ratio == PRESERVE_HEIGHT:
        return f"-1:{height}"
    return f"{width}:{height}"


def video_filters(config: VideoConfig, scale: str) -> List[str]:
    """Return the video filter chain.

    Flips must come before the scale (or custom) filter, otherwise the
    picture ends up in the wrong orientation.
    """
    custom = config.video_filter
    if custom == NO_FILTER:
        return []

    filters = []
    if config.hflip:
        filters.append('hflip')
    if config.vflip:
        filters.append('vflip')
    filters.append(custom if custom else f"scale={scale}")
    return filters


def clamp(value: int, ceiling: Optional[int]) -> int:
    if ceiling and value > ceiling:
        return ceiling
    return value


def stream_parameters(config: VideoConfig, request: StartStreamRequest) -> StreamParameters:
    video = request.video

    if config.force_max:
        width, height, fps = config.max_width, config.max_height, config.max_fps
        video_bitrate = config.max_bitrate or video.max_bit_rate
    else:
        width = clamp(video.width, config.max_width)
        height = clamp(video.height, config.max_height)
        fps = clamp(video.fps, config.max_fps)
        video_bitrate = video.max_bit_rate
        if config.max_bitrate and video_bitrate > config.max_bitrate:
            video_bitrate = config.max_bitrate
        elif config.min_bitrate and video_bitrate < config.min_bitrate:
            video_bitrate = config.min_bitrate

    return StreamParameters(
        width=width,
        height=height,
        fps=fps,
        video_bitrate=video_bitrate,
        audio_bitrate=clamp(request.audio.max_bit_rate, config.max_bitrate),
        mtu=config.packet_size or video.mtu,
    )


def _host(address: str) -> str:
    return f"[{address}]" if ':' in address else address


def _output_args(address: str, endpoint: StreamEndpoint, packet_size: int) -> List[str]:
    target = f"{_host(address)}:{endpoint.port}"
    query = (
        f"?rtcpport={endpoint.port}&localrtcpport={endpoint.port}&pkt_size={packet_size}"
    )

    args = ['-ssrc', str(endpoint.ssrc), '-f', 'rtp']
    if endpoint.crypto_suite == SRTPCryptoSuite.NONE:
        args.append(f"rtp://{target}{query}")
    else:
        args += [
            '-srtp_out_suite', endpoint.crypto_suite.name,
            '-srtp_out_params', endpoint.srtp_params,
            f"srtp://{target}{query}",
        ]
    return args


def build_snapshot_command(
    binary: str,
    config: VideoConfig,
    width: int,
    height: int,
) -> List[str]:
    """Build the command grabbing one frame as an image on stdout.

    Args:
        binary: FFmpeg executable
        config: Camera settings
        width: Requested image width
        height: Requested image height

    Returns:
        Argument list
    """
    width = clamp(width, config.max_width)
    height = clamp(height, config.max_height)
    source = config.still_image_source or config.source or ''

    cmd = [binary] + shlex.split(source) + ['-frames:v', '1']

    filters = video_filters(config, resolution(config, width, height))
    if filters:
        cmd += ['-vf', ','.join(filters)]

    cmd += ['-f', 'image2', '-']
    return cmd


def build_stream_command(
    binary: str,
    config: VideoConfig,
    session: PendingSession,
    request: StartStreamRequest,
) -> List[str]:
    """Build the command relaying the camera to the controller over SRTP.

    Args:
        binary: FFmpeg executable
        config: Camera settings
        session: Negotiated session holding ports, keys and SSRCs
        request: Stream parameters selected by the controller

    Returns:
        Argument list
    """
    params = stream_parameters(config, request)

    cmd = [binary] + shlex.split(config.source or '')

    cmd += [
        '-map', config.map_video,
        '-vcodec', config.vcodec,
        '-pix_fmt', 'yuv420p',
        '-r', str(params.fps),
        '-f', 'rawvideo',
    ]
    cmd += shlex.split(config.additional_commandline or '')

    # filters cannot be combined with stream copy
    if config.vcodec != COPY_CODEC:
        filters = video_filters(config, resolution(config, params.width, params.height))
        if filters:
            cmd += ['-vf', ','.join(filters)]

    cmd += [
        '-b:v', f"{params.video_bitrate}k",
        '-bufsize', f"{2 * params.video_bitrate}k",
        '-maxrate', f"{params.video_bitrate}k",
        '-payload_type', str(request.video.pt),
    ]
    cmd += _output_args(session.address, session.video, params.mtu)

    if config.audio:
        cmd += [
            '-map', config.map_audio,
            '-acodec', 'libfdk_aac',
            '-profile:a', 'aac_eld',
            '-flags', '+global_header',
            '-f', 'null',
            '-ar', f"{request.audio.sample_rate}k",
            '-b:a', f"{params.audio_bitrate}k",
            '-bufsize', f"{params.audio_bitrate}k",
            '-ac', '1',
            '-payload_type', str(request.audio.pt),
        ]
        cmd += _output_args(session.address, session.audio, AUDIO_PACKET_SIZE)

    if config.debug:
        cmd += ['-loglevel', 'level+verbose']

    return cmd
