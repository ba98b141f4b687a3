"""
Exceptions raised by the rc_dynamics client library.

Four families are kept apart so callers can react differently:
- ConfigurationError: bad input (address, stream name, interface); never retried
- TransportError: the device or the local socket layer refused the request
- ProtocolMismatchError: the device answered, but in a shape we don't understand
- UnexpectedReceiveTimeout: no data arrived while confirming a new stream

Ordinary receive timeouts are not exceptions; receivers return None.
"""

from typing import Optional


class DynamicsError(Exception):
    """Base class for all rc_dynamics errors"""


class ConfigurationError(DynamicsError, ValueError):
    """Invalid usage or configuration; retrying will not help"""


class InvalidAddressError(ConfigurationError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Given IP address is not a valid address: {address}")


class StreamNotAvailableError(ConfigurationError):
    def __init__(self, stream: str, device: str):
        self.stream = stream
        self.device = device
        super().__init__(f"Stream of type '{stream}' is not available on device {device}")


class NoLocalAddressError(ConfigurationError):
    """No local network interface qualifies as a stream destination"""


class UnsupportedMessageTypeError(ConfigurationError):
    def __init__(self, message_type: str, supported):
        self.message_type = message_type
        self.supported = sorted(supported)
        super().__init__(
            f"Unsupported message type '{message_type}'. "
            f"Only the following types are supported: {' '.join(self.supported)}"
        )


class TransportError(DynamicsError):
    """
    A control-plane request failed or the local socket layer failed.

    Attributes:
        status_code: HTTP status code, or None when no response was received
        url: Requested URL (if any)
        body: Response text of the failing request (if any)
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 url: Optional[str] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.url = url
        self.body = body
        details = []
        if status_code is not None:
            details.append(f"status code: {status_code}")
        if url:
            details.append(f"url: {url}")
        if body:
            details.append(f"text: {body}")
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)


class ReceiverError(TransportError):
    """Socket-level failure while receiving stream data"""


class ReceiverBindError(ReceiverError):
    """Could not create or bind the receiving socket"""


class ProtocolMismatchError(DynamicsError):
    """The device response matches none of the known firmware schemas"""

    def __init__(self, message: str, url: Optional[str] = None, body: Optional[str] = None):
        self.url = url
        self.body = body
        if url:
            message = f"{message}\nService called: {url}"
        if body:
            message = f"{message}\nResponse:\n{body}"
        super().__init__(message)


class InvalidStateError(ProtocolMismatchError):
    def __init__(self, state: str, module: str, url: Optional[str] = None,
                 body: Optional[str] = None):
        self.state = state
        self.module = module
        super().__init__(f"Invalid state '{state}' reported by module {module}", url, body)


class NotAcceptedError(DynamicsError):
    def __init__(self, service: str):
        self.service = service
        super().__init__(f"Service call '{service}' was not accepted by the device")


class UnexpectedReceiveTimeout(DynamicsError):
    """No data arrived within the confirmation window of a new stream"""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Ran into unexpected receive timeout ({timeout_ms}ms)! Possible reasons:\n"
            "1) the device's dynamics module is not running, i.e. turned off.\n"
            "2) the device cannot estimate its dynamic state, e.g. cameras are occluded, "
            "camera images are too dark, or cameras are de-calibrated.\n"
            "3) network issues, i.e. messages are sent by the device but not "
            "received by this host!"
        )
