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
from ffmpegcam.streaming.errors import (
    AddressResolutionError, NoPortAvailable, ProcessLaunchError, StreamingError, StreamLimitReached,
)
from ffmpegcam.streaming.protocol import (
    InvalidRequest, PrepareStreamRequest, StartStreamRequest, StreamingRequest, StreamRequestType,
)

__all__ = ('PrepareHandler', 'StreamHandler')


def _status_for(error: StreamingError) -> int:
    if isinstance(error, InvalidRequest):
        return 400
    if isinstance(error, (StreamLimitReached, NoPortAvailable)):
        return 503
    return 500


class PrepareHandler(BaseHandler):
    """
    Negotiates a new stream session.

    Routes:
    - POST /cameras/<name>/sessions/<session_id>/prepare
    """

    def post(self, camera_name: str, session_id: str):
        delegate = self.get_delegate(camera_name)

        try:
            request = PrepareStreamRequest.from_dict(session_id, self.get_json_body())
            response = delegate.prepare_stream(request)
        except (InvalidRequest, StreamLimitReached, NoPortAvailable, AddressResolutionError) as e:
            raise HTTPError(_status_for(e), reason=str(e))

        self.finish_json(response.to_dict())


class StreamHandler(BaseHandler):
    """
    Starts, reconfigures or stops a negotiated session.

    Routes:
    - POST /cameras/<name>/sessions/<session_id>/start
    - POST /cameras/<name>/sessions/<session_id>/reconfigure
    - POST /cameras/<name>/sessions/<session_id>/stop
    """

    async def post(self, camera_name: str, session_id: str, op: str):
        delegate = self.get_delegate(camera_name)
        request_type = StreamRequestType(op)
        body = self.get_json_body()

        try:
            if request_type == StreamRequestType.START:
                request = StreamingRequest(session_id, request_type, start=StartStreamRequest.from_dict(body))
            else:
                request = StreamingRequest(session_id, request_type, video=body.get('video'))
        except InvalidRequest as e:
            raise HTTPError(400, reason=str(e))

        # stopping waits for ffmpeg to exit
        try:
            await IOLoop.current().run_in_executor(None, delegate.handle_stream_request, request)
        except ProcessLaunchError as e:
            logging.error(f'[{camera_name}] {e}')
            raise HTTPError(500, reason=str(e))

        self.finish_json({'session_id': session_id, 'request': op})
