"""
Data Receiver - UDP endpoint for one device data stream

Binds a UDP socket to a local address, applies a receive timeout and decodes
incoming datagrams by message type name. Each datagram is exactly one encoded
record; there is no additional framing.

A receiver serves one logical stream and one caller at a time. Timeouts are
expected outcomes and reported as None, never raised.

Example:
    receiver = DataReceiver('192.168.0.1', port=0, codecs=codecs)
    print(f"Bound to port {receiver.port}")
    receiver.set_timeout(100)
    frame = receiver.receive_typed('Frame')
    receiver.close()
"""

import logging
import socket
from typing import Any, Optional

from .codecs import DEFAULT_BUFFER_SIZE, MessageCodecs
from .errors import InvalidAddressError, ReceiverBindError, ReceiverError
from .net_utils import is_valid_ip_address

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10


class DataReceiver:
    """
    Receives datagrams of a single stream on a bound UDP socket.

    Attributes:
        ip_address: Local address the socket is bound to
        port: Actually bound port (assigned by the OS if 0 was requested)
        codecs: Decoders used by receive_typed()
    """

    def __init__(
        self,
        ip_address: str,
        port: int = 0,
        codecs: Optional[MessageCodecs] = None,
        buffer_size: Optional[int] = None,
    ):
        """
        Create the socket and bind it.

        Args:
            ip_address: Local IPv4 address to bind to
            port: Local port, or 0 for an ephemeral port
            codecs: Decoders for receive_typed() (default: none registered)
            buffer_size: Receive buffer in bytes (default: the largest buffer
                size registered in codecs, at least 512)

        Raises:
            InvalidAddressError: If ip_address is not a valid IPv4 address
            ReceiverBindError: If the socket cannot be created or bound
        """
        if not is_valid_ip_address(ip_address):
            raise InvalidAddressError(ip_address)

        self.ip_address = ip_address
        self.codecs = codecs if codecs is not None else MessageCodecs()
        self.buffer_size = buffer_size or max(DEFAULT_BUFFER_SIZE, self.codecs.max_buffer_size)
        self._timeout_ms = DEFAULT_TIMEOUT_MS

        try:
            self._socket: Optional[socket.socket] = socket.socket(
                socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        except OSError as e:
            raise ReceiverBindError(f"Error creating socket: {e}") from e

        try:
            self._socket.bind((ip_address, port))
            self.port = self._socket.getsockname()[1]
            self._socket.settimeout(self._timeout_ms / 1000.0)
        except OSError as e:
            self._socket.close()
            self._socket = None
            raise ReceiverBindError(
                f"Error binding socket to {ip_address} port number {port}: {e}") from e

        logger.info(f"Data receiver bound to {self.ip_address}:{self.port}")

    @property
    def address(self) -> str:
        """Bound endpoint as 'ip:port'"""
        return f"{self.ip_address}:{self.port}"

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    @property
    def closed(self) -> bool:
        return self._socket is None

    def set_timeout(self, ms: int):
        """
        Set how long receive calls block.

        Args:
            ms: Timeout in milliseconds; 0 polls without blocking
        """
        if ms < 0:
            raise ValueError("timeout must not be negative")
        sock = self._require_socket()
        sock.settimeout(ms / 1000.0)
        self._timeout_ms = ms

    def receive(self) -> Optional[bytes]:
        """
        Receive the next datagram.

        Returns:
            Raw payload, or None if nothing arrived within the timeout

        Raises:
            ReceiverError: On socket errors other than a timeout
        """
        sock = self._require_socket()
        try:
            return sock.recv(self.buffer_size)
        except (socket.timeout, BlockingIOError):
            return None
        except OSError as e:
            raise ReceiverError(f"Error during socket receive on {self.address}: {e}") from e

    def receive_typed(self, message_type: str) -> Optional[Any]:
        """
        Receive the next datagram and decode it as message_type.

        Args:
            message_type: Message type name, e.g. "Frame"

        Returns:
            Decoded record, or None if nothing arrived within the timeout

        Raises:
            UnsupportedMessageTypeError: If no decoder is registered for
                message_type (checked before reading from the socket)
        """
        codec = self.codecs.get(message_type)
        payload = self.receive()
        if payload is None:
            return None
        return codec.decode(payload)

    def close(self):
        """Release the socket. Safe to call more than once."""
        if self._socket is not None:
            self._socket.close()
            self._socket = None
            logger.debug(f"Data receiver on {self.ip_address}:{self.port} closed")

    def _require_socket(self) -> socket.socket:
        if self._socket is None:
            raise ReceiverError(f"Receiver on {self.address} is closed")
        return self._socket

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        state = "closed" if self.closed else f"timeout={self._timeout_ms}ms"
        return f"DataReceiver({self.address}, {state})"
