# Copyright (c) 2025 ffmpegcam contributors
# This file is part of ffmpegcam.

"""Tests for the per-camera stream session lifecycle."""

import shlex
import sys
import threading
import time
import unittest
from unittest import mock

from ffmpegcam.config import VideoConfig
from ffmpegcam.streaming.command import build_stream_command
from ffmpegcam.streaming.delegate import StreamingDelegate
from ffmpegcam.streaming.errors import MissingSource, NoPortAvailable, ProcessLaunchError, StreamLimitReached
from ffmpegcam.streaming.ports import TRANSPORT_UDP, PortReservation
from ffmpegcam.streaming.process import ProcessState
from ffmpegcam.streaming.protocol import (
    AudioInfo,
    InvalidRequest,
    PrepareStreamRequest,
    SRTPCryptoSuite,
    StartStreamRequest,
    StreamingRequest,
    StreamRequestType,
    StreamSetup,
    VideoInfo,
)

# The camera "source" is handed to the Python interpreter, which then plays
# the part of ffmpeg. Everything ffmpeg-specific that follows ends up in
# sys.argv and is ignored.
STREAMING = (
    "import sys, time; "
    "sys.stderr.write('frame=    1\\r'); sys.stderr.flush(); "
    "time.sleep(30)"
)

CRASHING = (
    "import sys, time; "
    "sys.stderr.write('frame=    1\\r'); sys.stderr.flush(); "
    "time.sleep(0.3); sys.exit(1)"
)

SNAPSHOT = "import sys; sys.stdout.buffer.write(b'jpeg')"


def python_source(script):
    return '-c ' + shlex.quote(script)


def make_prepare(session_id='session-1'):
    return PrepareStreamRequest(
        session_id=session_id,
        target_address='127.0.0.1',
        video=StreamSetup(
            port=51000,
            crypto_suite=SRTPCryptoSuite.AES_CM_128_HMAC_SHA1_80,
            srtp_key=b'v' * 16,
            srtp_salt=b'w' * 14,
        ),
        audio=StreamSetup(
            port=51002,
            crypto_suite=SRTPCryptoSuite.AES_CM_128_HMAC_SHA1_80,
            srtp_key=b'a' * 16,
            srtp_salt=b'b' * 14,
        ),
    )


def make_start():
    return StartStreamRequest(
        video=VideoInfo(width=1280, height=720, fps=30, pt=99, max_bit_rate=299),
        audio=AudioInfo(),
    )


class TestStreamingDelegate(unittest.TestCase):
    """Tests for StreamingDelegate."""

    def setUp(self):
        patcher = mock.patch(
            'ffmpegcam.streaming.delegate.network.resolve_local_address',
            return_value='127.0.0.1',
        )
        patcher.start()
        self.addCleanup(patcher.stop)

        self.failures = []
        self.failed = threading.Event()
        self.reservations = PortReservation()
        self.delegates = []

    def tearDown(self):
        for delegate in self.delegates:
            delegate.shutdown()

    def on_stream_failure(self, session_id, error):
        self.failures.append((session_id, error))
        self.failed.set()

    def make_delegate(self, script=STREAMING, **kwargs):
        kwargs.setdefault('source', python_source(script))
        delegate = StreamingDelegate(
            'Test Camera',
            VideoConfig(**kwargs),
            video_processor=sys.executable,
            on_stream_failure=self.on_stream_failure,
            reservations=self.reservations,
        )
        self.delegates.append(delegate)
        return delegate

    def start(self, delegate, session_id='session-1'):
        delegate.prepare_stream(make_prepare(session_id))
        delegate.start_stream(session_id, make_start())
        return delegate.sessions.get_active(session_id)

    def test_missing_source(self):
        with self.assertRaises(MissingSource):
            StreamingDelegate('Test Camera', VideoConfig())

    def test_prepare(self):
        delegate = self.make_delegate()
        response = delegate.prepare_stream(make_prepare())

        self.assertEqual(response.address, '127.0.0.1')
        self.assertNotEqual(response.video.port, response.audio.port)
        self.assertNotEqual(response.video.ssrc, response.audio.ssrc)
        self.assertEqual(response.video.srtp_key, b'v' * 16)
        self.assertEqual(response.audio.srtp_salt, b'b' * 14)
        self.assertTrue(self.reservations.is_reserved(TRANSPORT_UDP, '127.0.0.1', response.video.port))
        self.assertTrue(self.reservations.is_reserved(TRANSPORT_UDP, '127.0.0.1', response.audio.port))

        pending = delegate.sessions.get_pending('session-1')
        self.assertEqual(pending.video.srtp, b'v' * 16 + b'w' * 14)
        self.assertEqual(pending.video.return_port, response.video.port)
        self.assertEqual(pending.audio.ssrc, response.audio.ssrc)

    def test_concurrent_prepares_get_distinct_ports(self):
        delegate = self.make_delegate()
        responses = [delegate.prepare_stream(make_prepare(f'session-{i}')) for i in range(5)]

        ports = [port for r in responses for port in (r.video.port, r.audio.port)]
        self.assertEqual(len(set(ports)), len(ports))

    def test_prepare_again_replaces_session(self):
        """A repeated prepare overwrites the session and frees its old ports."""
        delegate = self.make_delegate()
        first = delegate.prepare_stream(make_prepare())
        second = delegate.prepare_stream(make_prepare())

        self.assertEqual(delegate.sessions.pending_ids(), ['session-1'])
        self.assertEqual(delegate.sessions.get_pending('session-1').video.return_port, second.video.port)
        self.assertFalse(self.reservations.is_reserved(TRANSPORT_UDP, '127.0.0.1', first.video.port))
        self.assertFalse(self.reservations.is_reserved(TRANSPORT_UDP, '127.0.0.1', first.audio.port))

    def test_prepare_releases_first_port_when_second_fails(self):
        delegate = self.make_delegate()
        reserve = mock.Mock(side_effect=[40000, NoPortAvailable('exhausted')])
        release = mock.Mock()

        with mock.patch.object(self.reservations, 'reserve', reserve), \
                mock.patch.object(self.reservations, 'release', release):
            with self.assertRaises(NoPortAvailable):
                delegate.prepare_stream(make_prepare())

        release.assert_called_once_with(TRANSPORT_UDP, '127.0.0.1', 40000)
        self.assertEqual(delegate.sessions.pending_ids(), [])

    def test_start(self):
        delegate = self.make_delegate()
        session = self.start(delegate)

        self.assertIsNotNone(session)
        self.assertTrue(session.process.wait_started(10))
        self.assertEqual(session.process.state, ProcessState.ACTIVE)
        self.assertIsNone(delegate.sessions.get_pending('session-1'))
        self.assertEqual(delegate.sessions.active_ids(), ['session-1'])

    def test_active_sessions_have_their_own_ports(self):
        delegate = self.make_delegate(max_streams=3)
        sessions = [self.start(delegate, f'session-{i}') for i in range(3)]

        self.assertEqual(sorted(delegate.sessions.active_ids()), ['session-0', 'session-1', 'session-2'])
        ports = [s.process.return_port for s in sessions]
        self.assertEqual(len(set(ports)), 3)

    def test_start_without_prepare(self):
        delegate = self.make_delegate()
        delegate.start_stream('unknown', make_start())

        self.assertEqual(delegate.sessions.active_ids(), [])

    def test_start_twice(self):
        """A duplicated start request does not launch a second process."""
        delegate = self.make_delegate()
        session = self.start(delegate)
        delegate.start_stream('session-1', make_start())

        self.assertIs(delegate.sessions.get_active('session-1'), session)

    def test_stop(self):
        delegate = self.make_delegate()
        session = self.start(delegate)
        self.assertTrue(session.process.wait_started(10))

        delegate.stop_stream('session-1')

        self.assertEqual(delegate.sessions.active_ids(), [])
        self.assertEqual(session.process.state, ProcessState.STOPPED)
        self.assertTrue(session.process.wait(5))
        self.assertEqual(self.failures, [])

    def test_stop_is_idempotent(self):
        delegate = self.make_delegate()
        self.start(delegate)

        delegate.stop_stream('session-1')
        delegate.stop_stream('session-1')
        delegate.stop_stream('unknown')

        self.assertEqual(delegate.sessions.active_ids(), [])

    def test_stop_before_start(self):
        """Stopping a prepared session turns the later start into a no-op."""
        delegate = self.make_delegate()
        delegate.prepare_stream(make_prepare())

        delegate.stop_stream('session-1')
        delegate.start_stream('session-1', make_start())

        self.assertEqual(delegate.sessions.active_ids(), [])
        self.assertEqual(delegate.sessions.pending_ids(), [])

    def test_stop_survives_process_errors(self):
        delegate = self.make_delegate()
        session = self.start(delegate)

        with mock.patch.object(session.process, 'stop', side_effect=OSError('gone')):
            delegate.stop_stream('session-1')

        self.assertEqual(delegate.sessions.active_ids(), [])
        # the real process still needs to go away
        session.process.stop()

    def test_process_failure(self):
        """A crashing ffmpeg removes the session and notifies the owner."""
        delegate = self.make_delegate(CRASHING)
        session = self.start(delegate)

        self.assertTrue(self.failed.wait(10))
        self.assertEqual(self.failures[0][0], 'session-1')
        self.assertEqual(self.failures[0][1].exit_code, 1)
        self.assertIsNone(delegate.sessions.get_active('session-1'))
        self.assertEqual(session.process.state, ProcessState.FAILED)

    def test_launch_error(self):
        delegate = StreamingDelegate(
            'Test Camera',
            VideoConfig(source='-i rtsp://10.0.0.5/stream'),
            video_processor='/nonexistent/ffmpeg',
            reservations=self.reservations,
        )
        delegate.prepare_stream(make_prepare())

        with self.assertRaises(ProcessLaunchError):
            delegate.start_stream('session-1', make_start())

        self.assertEqual(delegate.sessions.active_ids(), [])

    def test_max_streams(self):
        delegate = self.make_delegate(max_streams=1)
        self.start(delegate, 'session-1')

        with self.assertRaises(StreamLimitReached):
            delegate.prepare_stream(make_prepare('session-2'))

        delegate.stop_stream('session-1')
        delegate.prepare_stream(make_prepare('session-2'))

    def test_handle_stream_request(self):
        delegate = self.make_delegate()
        delegate.prepare_stream(make_prepare())

        delegate.handle_stream_request(
            StreamingRequest('session-1', StreamRequestType.START, start=make_start())
        )
        self.assertEqual(delegate.sessions.active_ids(), ['session-1'])

        delegate.handle_stream_request(
            StreamingRequest('session-1', StreamRequestType.RECONFIGURE, video={'width': 640})
        )
        self.assertEqual(delegate.sessions.active_ids(), ['session-1'])

        delegate.handle_stream_request(StreamingRequest('session-1', StreamRequestType.STOP))
        self.assertEqual(delegate.sessions.active_ids(), [])

    def test_shutdown(self):
        """Shutdown stops every process exactly once and refuses new sessions."""
        delegate = self.make_delegate(max_streams=5)
        sessions = [self.start(delegate, f'session-{i}') for i in range(3)]
        pending = delegate.prepare_stream(make_prepare('session-pending'))

        with mock.patch('ffmpegcam.streaming.process.FFmpegProcess.stop', autospec=True) as stop:
            delegate.shutdown()

        self.assertEqual(stop.call_count, 3)
        self.assertEqual({call.args[0] for call in stop.call_args_list}, {s.process for s in sessions})
        self.assertEqual(delegate.sessions.active_ids(), [])
        self.assertEqual(delegate.sessions.pending_ids(), [])
        self.assertFalse(self.reservations.is_reserved(TRANSPORT_UDP, '127.0.0.1', pending.video.port))

        with self.assertRaises(StreamLimitReached):
            delegate.prepare_stream(make_prepare('session-late'))

        for session in sessions:
            session.process.stop()

    def test_shutdown_during_start(self):
        """A shutdown landing while a start is being built leaves no process behind."""
        delegate = self.make_delegate()
        delegate.prepare_stream(make_prepare())

        real_build = build_stream_command

        def build_then_shut_down(*args, **kwargs):
            delegate.shutdown()
            return real_build(*args, **kwargs)

        with mock.patch('ffmpegcam.streaming.delegate.build_stream_command', side_effect=build_then_shut_down), \
                mock.patch('ffmpegcam.streaming.delegate.FFmpegProcess.start', autospec=True) as start:
            delegate.start_stream('session-1', make_start())

        start.assert_not_called()
        self.assertEqual(delegate.sessions.active_ids(), [])
        self.assertEqual(delegate.sessions.pending_ids(), [])

    def test_shutdown_between_activation_and_launch(self):
        """A process stopped by shutdown before it was launched never runs."""
        delegate = self.make_delegate()
        delegate.prepare_stream(make_prepare())
        sessions = []

        real_activate = delegate.sessions.activate

        def activate_then_shut_down(session_id, build):
            session = real_activate(session_id, build)
            sessions.append(session)
            delegate.shutdown()
            return session

        with mock.patch.object(delegate.sessions, 'activate', side_effect=activate_then_shut_down):
            delegate.start_stream('session-1', make_start())

        process = sessions[0].process
        self.assertIsNone(process.pid)
        self.assertEqual(process.state, ProcessState.STOPPED)
        self.assertEqual(delegate.sessions.active_ids(), [])

    def test_prepare_during_shutdown(self):
        """A prepare that stores its session after shutdown gives its ports back."""
        delegate = self.make_delegate()
        real_put_pending = delegate.sessions.put_pending
        stored = []

        def put_then_shut_down(session):
            stored.append(session)
            previous = real_put_pending(session)
            delegate.sessions.close()
            return previous

        with mock.patch.object(delegate.sessions, 'put_pending', side_effect=put_then_shut_down):
            with self.assertRaises(StreamLimitReached):
                delegate.prepare_stream(make_prepare())

        self.assertEqual(delegate.sessions.pending_ids(), [])
        self.assertFalse(self.reservations.is_reserved(TRANSPORT_UDP, '127.0.0.1', stored[0].video.return_port))
        self.assertFalse(self.reservations.is_reserved(TRANSPORT_UDP, '127.0.0.1', stored[0].audio.return_port))

    def test_unsupported_crypto_suite(self):
        """Suites ffmpeg cannot produce are refused before any port is reserved."""
        delegate = self.make_delegate()
        request = make_prepare()
        request.video.crypto_suite = SRTPCryptoSuite.AES_CM_256_HMAC_SHA1_80

        with mock.patch.object(self.reservations, 'reserve') as reserve:
            with self.assertRaises(InvalidRequest):
                delegate.prepare_stream(request)

        reserve.assert_not_called()
        self.assertEqual(delegate.sessions.pending_ids(), [])

    def test_unencrypted_stream(self):
        delegate = self.make_delegate()
        request = make_prepare()
        request.video.crypto_suite = SRTPCryptoSuite.NONE
        request.audio.crypto_suite = SRTPCryptoSuite.NONE

        delegate.prepare_stream(request)

        self.assertEqual(delegate.sessions.get_pending('session-1').video.crypto_suite, SRTPCryptoSuite.NONE)

    def test_snapshot(self):
        delegate = self.make_delegate(SNAPSHOT)
        self.assertEqual(delegate.handle_snapshot_request(640, 480), b'jpeg')

    def test_status(self):
        delegate = self.make_delegate()
        session = self.start(delegate)
        delegate.prepare_stream(make_prepare('session-2'))

        status = delegate.status()

        self.assertEqual(status['name'], 'Test Camera')
        self.assertEqual(list(status['pending']), ['session-2'])
        self.assertEqual(status['pending']['session-2']['address'], '127.0.0.1')
        self.assertLessEqual(status['pending']['session-2']['created_at'], time.time())
        self.assertEqual(status['active']['session-1']['pid'], session.process.pid)
        self.assertEqual(status['active']['session-1']['return_port'], session.return_port)
        self.assertEqual(status['config']['max_streams'], 2)


if __name__ == '__main__':
    unittest.main()
