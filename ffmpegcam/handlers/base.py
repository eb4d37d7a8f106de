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

import json
import logging
from typing import Any, Dict, Optional

from tornado.web import HTTPError, RequestHandler

from ffmpegcam.streaming import integration
from ffmpegcam.streaming.delegate import StreamingDelegate

__all__ = ('BaseHandler',)


class BaseHandler(RequestHandler):
    def get_json_body(self) -> Dict[str, Any]:
        if not self.request.body:
            return {}

        try:
            data = json.loads(self.request.body)
        except ValueError:
            raise HTTPError(400, reason='request body is not valid JSON')

        if not isinstance(data, dict):
            raise HTTPError(400, reason='request body must be a JSON object')

        return data

    def get_delegate(self, camera_name: str) -> StreamingDelegate:
        delegate = integration.get_delegate(camera_name)
        if delegate is None:
            raise HTTPError(404, reason=f'unknown camera {camera_name}')

        return delegate

    def finish_json(self, data: Optional[Any] = None):
        self.set_header('Content-Type', 'application/json')
        self.finish(json.dumps(data if data is not None else {}))

    def write_error(self, status_code: int, **kwargs):
        if status_code >= 500:
            logging.error(f'{self.request.method} {self.request.uri} failed with {status_code}: {self._reason}')

        self.finish_json({'error': self._reason})
