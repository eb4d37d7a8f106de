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

import logging

from tornado.ioloop import IOLoop
from tornado.web import HTTPError

from ffmpegcam.handlers.base import BaseHandler
from ffmpegcam.streaming import integration
from ffmpegcam.streaming.errors import ProcessFailure, ProcessLaunchError

__all__ = ('SnapshotHandler', 'StatusHandler')


class SnapshotHandler(BaseHandler):
    async def get(self, camera_name: str):
        delegate = self.get_delegate(camera_name)

        try:
            width = int(self.get_argument('width', '0')) or delegate.config.max_width
            height = int(self.get_argument('height', '0')) or delegate.config.max_height
        except ValueError:
            raise HTTPError(400, reason='width and height must be integers')

        try:
            image = await IOLoop.current().run_in_executor(
                None, delegate.handle_snapshot_request, width, height
            )
        except (ProcessLaunchError, ProcessFailure) as e:
            logging.error(f'[{camera_name}] snapshot failed: {e}')
            raise HTTPError(502, reason=str(e))

        self.set_header('Content-Type', 'image/jpeg')
        self.set_header('Cache-Control', 'no-store')
        self.finish(image)


class StatusHandler(BaseHandler):
    def get(self):
        self.finish_json(integration.get_status())
