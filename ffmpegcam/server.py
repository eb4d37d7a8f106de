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

"""HTTP front end and command line entry point."""

import argparse
import asyncio
import logging
import signal
from typing import List, Optional

from tornado.web import Application

from ffmpegcam import VERSION, settings
from ffmpegcam.handlers.snapshot import SnapshotHandler, StatusHandler
from ffmpegcam.handlers.stream import PrepareHandler, StreamHandler
from ffmpegcam.streaming import integration
from ffmpegcam.streaming.errors import ConfigurationError

_CAMERA = r'/cameras/(?P<camera_name>[^/]+)'
_SESSION = _CAMERA + r'/sessions/(?P<session_id>[^/]+)'


def make_app(**kwargs) -> Application:
    return Application([
        (_SESSION + r'/prepare/?', PrepareHandler),
        (_SESSION + r'/(?P<op>start|reconfigure|stop)/?', StreamHandler),
        (_CAMERA + r'/snapshot/?', SnapshotHandler),
        (r'/status/?', StatusHandler),
    ], **kwargs)


def configure_logging(level: Optional[str] = None):
    level = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format='%(asctime)s: [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='ffmpegcam', description="Stream IP cameras through ffmpeg")
    parser.add_argument('--version', action='version', version=f'%(prog)s {VERSION}')
    parser.add_argument('-c', '--config', default=settings.CONFIG_FILE, help="camera configuration file")
    parser.add_argument('-l', '--listen', default=settings.LISTEN, help="address to listen on")
    parser.add_argument('-p', '--port', type=int, default=settings.PORT, help="port to listen on")
    parser.add_argument(
        '--log-level',
        default=settings.LOG_LEVEL,
        choices=('DEBUG', 'INFO', 'WARNING', 'ERROR'),
        type=str.upper,
        help="logging verbosity",
    )
    parser.add_argument('--ffmpeg', default=settings.FFMPEG_PATH, help="ffmpeg executable")

    return parser


async def serve():
    integration.start(settings.CONFIG_FILE)

    server = make_app().listen(settings.PORT, address=settings.LISTEN)
    logging.info(f"ffmpegcam {VERSION} listening on {settings.LISTEN}:{settings.PORT}")

    loop = asyncio.get_running_loop()
    stopping = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stopping.set)

    await stopping.wait()
    logging.info("interrupt signal received, shutting down...")

    server.stop()
    await loop.run_in_executor(None, integration.stop)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings.CONFIG_FILE = args.config
    settings.LISTEN = args.listen
    settings.PORT = args.port
    settings.LOG_LEVEL = args.log_level
    settings.FFMPEG_PATH = args.ffmpeg

    configure_logging(settings.LOG_LEVEL)

    try:
        asyncio.run(serve())
    except ConfigurationError as e:
        logging.error(str(e))
        return 1

    logging.info("bye!")
    return 0
