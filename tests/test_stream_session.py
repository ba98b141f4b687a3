"""
Tests for StreamSession: registration, first-data confirmation and
at-most-once deregistration.

The device side is a MagicMock registrar that sends a datagram to every
destination it is asked to add, over loopback.
"""

import gc
import unittest
from unittest.mock import MagicMock, patch

import httpx
import pytest

from conftest import DEVICE_IP, send_datagram
from rc_dynamics import (
    ConfigurationError,
    DataReceiver,
    MessageCodecs,
    RemoteInterface,
    SessionState,
    StreamNotAvailableError,
    StreamSession,
    TransportError,
    UnexpectedReceiveTimeout,
    UnsupportedMessageTypeError,
)

LOOPBACK = {"lo": [("127.0.0.1", "255.0.0.0")]}


def make_registrar(sends_data=True):
    registrar = MagicMock()
    registrar.device_address = "127.0.0.2"
    registrar.closed = False
    registrar.get_message_type_of_stream.return_value = "Frame"
    if sends_data:
        registrar.add_destination_to_stream.side_effect = lambda stream, dest: send_datagram(dest)
    return registrar


def open_session(registrar, **kwargs):
    kwargs.setdefault("interfaces", LOOPBACK)
    kwargs.setdefault("confirmation_timeout_ms", 1000)
    return StreamSession.open(registrar, "pose", **kwargs)


class TestStreamSessionOpen(unittest.TestCase):

    def test_session_becomes_active(self):
        registrar = make_registrar()
        session = open_session(registrar, poll_timeout_ms=20)

        self.assertIs(session.state, SessionState.ACTIVE)
        self.assertTrue(session.active)
        self.assertTrue(session.destination.startswith("127.0.0.1:"))
        self.assertEqual(session.timeout_ms, 20)
        registrar.add_destination_to_stream.assert_called_once_with("pose", session.destination)

        # The confirming message is handed out first
        self.assertEqual(session.receive(), b"\x08\x01")
        send_datagram(session.destination, b"\x08\x02")
        self.assertEqual(session.receive(), b"\x08\x02")
        self.assertIsNone(session.receive())

        session.close()

    def test_records_are_decoded(self):
        codecs = MessageCodecs()
        codecs.register("Frame", lambda payload: {"size": len(payload)})

        with open_session(make_registrar(), codecs=codecs) as session:
            self.assertEqual(session.receive(), {"size": 2})

    def test_unknown_stream_touches_nothing(self):
        registrar = make_registrar()
        registrar.check_stream_type_available.side_effect = StreamNotAvailableError("gyro", "127.0.0.2")

        with self.assertRaises(StreamNotAvailableError):
            StreamSession.open(registrar, "gyro", interfaces=LOOPBACK)
        registrar.add_destination_to_stream.assert_not_called()

    def test_unsupported_message_type_touches_nothing(self):
        registrar = make_registrar()
        with self.assertRaises(UnsupportedMessageTypeError):
            open_session(registrar, codecs=MessageCodecs.passthrough(["Imu"]))
        registrar.add_destination_to_stream.assert_not_called()

    def test_registration_failure(self):
        registrar = make_registrar()
        registrar.add_destination_to_stream.side_effect = TransportError("rejected", status_code=400)

        with self.assertRaises(TransportError):
            open_session(registrar)
        registrar.delete_destination_from_stream.assert_not_called()

    def test_registration_without_response_deletes_destination(self):
        registrar = make_registrar(sends_data=False)
        registrar.add_destination_to_stream.side_effect = TransportError("read timed out")

        with self.assertRaises(TransportError):
            open_session(registrar)

        destination = registrar.add_destination_to_stream.call_args[0][1]
        registrar.delete_destination_from_stream.assert_called_once_with("pose", destination)

    def test_registration_cleanup_failure_keeps_original_error(self):
        registrar = make_registrar(sends_data=False)
        registrar.add_destination_to_stream.side_effect = TransportError("read timed out")
        registrar.delete_destination_from_stream.side_effect = TransportError("device gone")

        with self.assertRaises(TransportError) as ctx:
            open_session(registrar)
        self.assertIn("read timed out", str(ctx.exception))

    def test_negative_timeouts_touch_nothing(self):
        registrar = make_registrar()
        with self.assertRaises(ConfigurationError):
            open_session(registrar, poll_timeout_ms=-1)
        with self.assertRaises(ConfigurationError):
            open_session(registrar, confirmation_timeout_ms=-1)
        registrar.check_stream_type_available.assert_not_called()
        registrar.add_destination_to_stream.assert_not_called()

    def test_confirmation_timeout_deletes_destination(self):
        registrar = make_registrar(sends_data=False)

        with self.assertRaises(UnexpectedReceiveTimeout) as ctx:
            open_session(registrar, confirmation_timeout_ms=50)

        self.assertEqual(ctx.exception.timeout_ms, 50)
        destination = registrar.add_destination_to_stream.call_args[0][1]
        registrar.delete_destination_from_stream.assert_called_once_with("pose", destination)

    def test_confirmation_timeout_leaves_session_failed(self):
        registrar = make_registrar(sends_data=False)
        receiver = DataReceiver("127.0.0.1", codecs=MessageCodecs.passthrough(["Frame"]))
        session = StreamSession(registrar, "pose", "Frame", receiver)

        with self.assertRaises(UnexpectedReceiveTimeout):
            session._establish(50, 100)

        self.assertIs(session.state, SessionState.FAILED)
        self.assertTrue(session.receiver.closed)
        self.assertTrue(session.close())
        registrar.delete_destination_from_stream.assert_called_once()


class TestStreamSessionClose(unittest.TestCase):

    def test_repeated_close_deletes_once(self):
        registrar = make_registrar()
        session = open_session(registrar)
        destination = session.destination

        self.assertTrue(session.close())
        self.assertTrue(session.close())
        del session
        gc.collect()

        registrar.delete_destination_from_stream.assert_called_once_with("pose", destination)

    def test_garbage_collection_deletes_destination(self):
        registrar = make_registrar()
        session = open_session(registrar)
        destination = session.destination

        del session
        gc.collect()

        registrar.delete_destination_from_stream.assert_called_once_with("pose", destination)

    def test_failed_delete_is_reported_not_raised(self):
        registrar = make_registrar()
        registrar.delete_destination_from_stream.side_effect = TransportError("device gone")
        session = open_session(registrar)

        self.assertFalse(session.close())
        self.assertFalse(session.close())
        self.assertTrue(session.receiver.closed)
        registrar.delete_destination_from_stream.assert_called_once()

    def test_receive_after_close(self):
        session = open_session(make_registrar())
        session.receive()
        session.close()

        self.assertIs(session.state, SessionState.CLOSED)
        with self.assertRaises(ConfigurationError):
            session.receive()
        with self.assertRaises(ConfigurationError):
            session.set_timeout(10)


def test_session_through_remote_interface(remote, fake_device):
    fake_device.on_add = lambda stream, destination: send_datagram(destination)

    with patch("rc_dynamics.stream_session.get_local_ip", return_value="127.0.0.1"):
        session = remote.create_receiver_for_stream("pose", confirmation_timeout_ms=1000)

    assert session.active
    assert fake_device.destinations["pose"] == [session.destination]
    assert remote.get_requested_destinations_of_stream("pose") == [session.destination]

    session.close()

    assert fake_device.destinations["pose"] == []
    assert remote.get_requested_destinations() == {}


def test_registration_timeout_leaves_no_destination(fake_device):
    def handler(request):
        response = fake_device.handler(request)
        if request.method == "PUT":
            # The device registered the destination, but the reply is lost
            raise httpx.ReadTimeout("timed out", request=request)
        return response

    remote = RemoteInterface(DEVICE_IP, transport=httpx.MockTransport(handler))
    with patch("rc_dynamics.stream_session.get_local_ip", return_value="127.0.0.1"):
        with pytest.raises(TransportError):
            remote.create_receiver_for_stream("pose", confirmation_timeout_ms=50)

    assert fake_device.destinations["pose"] == []
    assert remote.close() == {}


def test_close_after_remote_interface_closed(remote, fake_device, caplog):
    fake_device.on_add = lambda stream, destination: send_datagram(destination)
    with patch("rc_dynamics.stream_session.get_local_ip", return_value="127.0.0.1"):
        session = remote.create_receiver_for_stream("pose", confirmation_timeout_ms=1000)

    assert remote.close() == {}
    deletes = fake_device.count("DELETE")

    assert session.close()
    assert session.receiver.closed
    assert fake_device.count("DELETE") == deletes
    assert "Could not remove destination" not in caplog.text


def test_unknown_stream_through_remote_interface(remote, fake_device):
    before = len(fake_device.requests)
    with pytest.raises(StreamNotAvailableError):
        remote.create_receiver_for_stream("gyro")
    assert len(fake_device.requests) == before


if __name__ == '__main__':
    unittest.main()
