"""
rc_dynamics - Client for the data streams of an embedded sensing device

Consume pose, IMU and dynamics streams pushed over UDP, while the device's
REST control plane manages where each stream is sent.

Quick Start:
    from rc_dynamics import DeviceRegistry

    with DeviceRegistry() as devices:
        device = devices.get_or_create_device("192.168.0.12")
        with device.create_receiver_for_stream("pose", codecs=codecs) as session:
            frame = session.receive()

Streams are deregistered from the device when their session closes, and
every device deletes its leftover destinations when the registry closes.
"""

__version__ = "0.3.0"

from .codecs import Codec, MessageCodecs
from .config import ClientConfig, load_config
from .data_receiver import DataReceiver
from .errors import (
    ConfigurationError,
    DynamicsError,
    InvalidAddressError,
    InvalidStateError,
    NoLocalAddressError,
    NotAcceptedError,
    ProtocolMismatchError,
    ReceiverBindError,
    ReceiverError,
    StreamNotAvailableError,
    TransportError,
    UnexpectedReceiveTimeout,
    UnsupportedMessageTypeError,
)
from .net_utils import get_local_ip, ip_in_range, is_valid_ip_address
from .registry import DeviceRegistry
from .remote_interface import (
    BULK_DELETE_MIN_VERSION,
    ModuleState,
    RemoteInterface,
    ReturnCode,
    StreamDescriptor,
    TrajectoryTime,
)
from .stream_session import SessionState, StreamSession

__all__ = [
    # Control plane
    "RemoteInterface",
    "DeviceRegistry",
    "StreamDescriptor",
    "ModuleState",
    "ReturnCode",
    "TrajectoryTime",
    "BULK_DELETE_MIN_VERSION",
    # Data plane
    "DataReceiver",
    "StreamSession",
    "SessionState",
    "MessageCodecs",
    "Codec",
    # Network
    "get_local_ip",
    "ip_in_range",
    "is_valid_ip_address",
    # Configuration
    "ClientConfig",
    "load_config",
    # Errors
    "DynamicsError",
    "ConfigurationError",
    "InvalidAddressError",
    "StreamNotAvailableError",
    "NoLocalAddressError",
    "UnsupportedMessageTypeError",
    "TransportError",
    "ReceiverError",
    "ReceiverBindError",
    "ProtocolMismatchError",
    "InvalidStateError",
    "NotAcceptedError",
    "UnexpectedReceiveTimeout",
]
