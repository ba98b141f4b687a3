"""
Stream Session - One registered destination plus its local receiver

A session ties together:
- a local UDP receiver (DataReceiver)
- the destination registered for it on the device

and guarantees the destination is deleted again when the session ends,
whether through close(), a with-block, or garbage collection.

State machine:
    CREATED -> REGISTERING -> AWAITING_FIRST_DATA -> ACTIVE -> CLOSED
    any non-terminal state -> FAILED

Sessions are normally created through RemoteInterface.create_receiver_for_stream().
"""

import logging
import weakref
from enum import Enum
from typing import Any, List, Optional, Protocol

from .codecs import MessageCodecs
from .config import DEFAULT_CONFIRMATION_TIMEOUT_MS, DEFAULT_POLL_TIMEOUT_MS
from .data_receiver import DataReceiver
from .errors import ConfigurationError, TransportError, UnexpectedReceiveTimeout
from .net_utils import InterfaceTable, get_local_ip

logger = logging.getLogger(__name__)


class SessionState(Enum):
    CREATED = "created"
    REGISTERING = "registering"
    AWAITING_FIRST_DATA = "awaiting_first_data"
    ACTIVE = "active"
    CLOSED = "closed"
    FAILED = "failed"


class DestinationRegistrar(Protocol):
    """What a session needs from the control plane"""

    device_address: str
    closed: bool

    def get_requested_destinations_of_stream(self, stream: str) -> List[str]:
        ...

    def check_stream_type_available(self, stream: str) -> None:
        ...

    def get_message_type_of_stream(self, stream: str) -> str:
        ...

    def add_destination_to_stream(self, stream: str, destination: str) -> None:
        ...

    def delete_destination_from_stream(self, stream: str, destination: str) -> None:
        ...


def _release(registrar: DestinationRegistrar, stream: str, destination: str,
             receiver: DataReceiver) -> bool:
    # Runs at most once per destination; must not raise
    deleted = True
    try:
        if registrar.closed and destination not in registrar.get_requested_destinations_of_stream(stream):
            # Already deleted when the registrar closed
            return True
        registrar.delete_destination_from_stream(stream, destination)
    except Exception as e:
        logger.warning(
            f"Could not remove destination {destination} for stream {stream} "
            f"from device {registrar.device_address}: {e}"
        )
        deleted = False
    finally:
        receiver.close()
    return deleted


class StreamSession:
    """
    A subscription to one device stream.

    Example:
        session = StreamSession.open(device, "pose", codecs=codecs)
        try:
            while running:
                frame = session.receive()   # None on timeout
                if frame is not None:
                    handle(frame)
        finally:
            session.close()
    """

    def __init__(self, registrar: DestinationRegistrar, stream: str,
                 message_type: str, receiver: DataReceiver):
        self._registrar = registrar
        self.stream = stream
        self.message_type = message_type
        self.receiver = receiver
        self.state = SessionState.CREATED
        self.destination: Optional[str] = None

        self._finalizer: Optional[weakref.finalize] = None
        self._first_record: Optional[Any] = None
        self._deleted_ok = True

    @classmethod
    def open(
        cls,
        registrar: DestinationRegistrar,
        stream: str,
        interface: str = "",
        port: int = 0,
        codecs: Optional[MessageCodecs] = None,
        confirmation_timeout_ms: int = DEFAULT_CONFIRMATION_TIMEOUT_MS,
        poll_timeout_ms: int = DEFAULT_POLL_TIMEOUT_MS,
        interfaces: Optional[InterfaceTable] = None,
    ) -> 'StreamSession':
        """
        Register a local receiver for a stream and wait for its first message.

        Args:
            registrar: Control plane of the device (usually a RemoteInterface)
            stream: Stream name, e.g. "pose"
            interface: Local interface to receive on ("" = pick automatically)
            port: Local port (0 = ephemeral)
            codecs: Decoders; must know the stream's message type
                (default: records are the raw payload bytes)
            confirmation_timeout_ms: How long to wait for the first message
            poll_timeout_ms: Receive timeout once the stream is active
            interfaces: Interface table for address selection (default: this host's)

        Returns:
            Session in ACTIVE state

        Raises:
            ConfigurationError: Negative timeout; nothing was touched
            StreamNotAvailableError: Unknown stream; nothing was touched
            NoLocalAddressError: No usable local interface
            UnsupportedMessageTypeError: codecs cannot decode the stream
            TransportError: Bind or registration failed; nothing stays registered
            UnexpectedReceiveTimeout: No message within the confirmation window;
                the destination has been deleted again
        """
        if confirmation_timeout_ms < 0 or poll_timeout_ms < 0:
            raise ConfigurationError(
                f"Timeouts must not be negative (confirmation: {confirmation_timeout_ms}ms, "
                f"poll: {poll_timeout_ms}ms)")

        registrar.check_stream_type_available(stream)
        message_type = registrar.get_message_type_of_stream(stream)

        if codecs is None:
            codecs = MessageCodecs.passthrough([message_type])
        codecs.get(message_type)

        local_ip = get_local_ip(
            peer_address=registrar.device_address,
            interface=interface or None,
            interfaces=interfaces,
        )
        receiver = DataReceiver(local_ip, port, codecs)

        session = cls(registrar, stream, message_type, receiver)
        session._establish(confirmation_timeout_ms, poll_timeout_ms)
        return session

    def _establish(self, confirmation_timeout_ms: int, poll_timeout_ms: int):
        if self.state is not SessionState.CREATED:
            raise ConfigurationError(f"Session for stream {self.stream} was already opened")

        destination = self.receiver.address
        self.state = SessionState.REGISTERING
        try:
            self._registrar.add_destination_to_stream(self.stream, destination)
        except TransportError as e:
            # No response: the device may have registered the destination anyway
            if e.status_code is None:
                _release(self._registrar, self.stream, destination, self.receiver)
            self.state = SessionState.FAILED
            self.receiver.close()
            raise
        except Exception:
            self.state = SessionState.FAILED
            self.receiver.close()
            raise

        self.destination = destination
        self._finalizer = weakref.finalize(
            self, _release, self._registrar, self.stream, destination, self.receiver)

        # Long timeout once, to confirm the device is actually sending
        self.state = SessionState.AWAITING_FIRST_DATA
        try:
            self.receiver.set_timeout(confirmation_timeout_ms)
            first = self.receiver.receive_typed(self.message_type)
        except Exception:
            self._fail()
            raise

        if first is None:
            self._fail()
            raise UnexpectedReceiveTimeout(confirmation_timeout_ms)

        self._first_record = first
        self.receiver.set_timeout(poll_timeout_ms)
        self.state = SessionState.ACTIVE
        logger.info(f"Stream {self.stream} ({self.message_type}) established to {destination}")

    def _fail(self):
        self._deleted_ok = self._finalizer()
        self.state = SessionState.FAILED
        logger.warning(f"Stream {self.stream} to {self.destination} failed to establish")

    # === Receiving ===

    def receive(self) -> Optional[Any]:
        """
        Next decoded record of the stream.

        Returns:
            The record, or None if nothing arrived within the poll timeout
        """
        if self._first_record is not None:
            record, self._first_record = self._first_record, None
            return record
        self._require_active()
        return self.receiver.receive_typed(self.message_type)

    def set_timeout(self, ms: int):
        self._require_active()
        self.receiver.set_timeout(ms)

    @property
    def timeout_ms(self) -> int:
        return self.receiver.timeout_ms

    @property
    def active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def _require_active(self):
        if self.state is not SessionState.ACTIVE:
            raise ConfigurationError(
                f"Session for stream {self.stream} is {self.state.value}, not active")

    # === Lifecycle ===

    def close(self) -> bool:
        """
        Delete the destination from the device and close the receiver.

        Never raises; a failed deletion is logged with the stale destination.
        Closing again is a no-op.

        Returns:
            True if the destination was deleted (or none was registered)
        """
        if self.state in (SessionState.CLOSED, SessionState.FAILED):
            return self._deleted_ok

        if self._finalizer is not None and self._finalizer.alive:
            self._deleted_ok = self._finalizer()
        else:
            self.receiver.close()
        self.state = SessionState.CLOSED
        self._first_record = None
        logger.info(f"Stream session {self.stream} -> {self.destination} closed")
        return self._deleted_ok

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        return (f"StreamSession(stream={self.stream!r}, destination={self.destination!r}, "
                f"state={self.state.value})")
