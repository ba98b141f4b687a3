"""
Message Codecs - Explicit mapping from message type name to decoder

Each datagram of a stream carries exactly one encoded record of the stream's
message type. The mapping is built once, up front; looking up a type name
that was never registered is the "unsupported type" error path.

Protobuf message classes plug in directly:

    from roboception.msgs import frame_pb2, imu_pb2
    codecs = MessageCodecs.from_message_classes(frame_pb2.Frame, imu_pb2.Imu)
"""

import importlib
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import UnsupportedMessageTypeError

logger = logging.getLogger(__name__)

# Small fixed-size records (Frame, Imu, Dynamics) fit into this
DEFAULT_BUFFER_SIZE = 512

Decoder = Callable[[bytes], Any]


@dataclass(frozen=True)
class Codec:
    """Decoder for one message type"""
    name: str
    decode: Decoder
    buffer_size: int = DEFAULT_BUFFER_SIZE


class MessageCodecs:
    """Registry of decoders keyed by message type name"""

    def __init__(self, codecs: Optional[Iterable[Codec]] = None):
        self._codecs: Dict[str, Codec] = {}
        for codec in codecs or ():
            self._codecs[codec.name] = codec

    def register(self, name: str, decoder: Decoder,
                 buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        """
        Register (or replace) the decoder for a message type.

        Args:
            name: Message type name as advertised in the stream catalog
            decoder: Callable turning one datagram payload into a record
            buffer_size: Receive buffer needed for this type, in bytes
        """
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self._codecs[name] = Codec(name, decoder, buffer_size)
        logger.debug(f"Registered decoder for message type {name} (buffer {buffer_size} bytes)")

    def get(self, name: str) -> Codec:
        try:
            return self._codecs[name]
        except KeyError:
            raise UnsupportedMessageTypeError(name, self._codecs.keys()) from None

    def decode(self, name: str, payload: bytes) -> Any:
        return self.get(name).decode(payload)

    @property
    def supported_types(self) -> List[str]:
        return sorted(self._codecs)

    @property
    def max_buffer_size(self) -> int:
        return max((c.buffer_size for c in self._codecs.values()), default=DEFAULT_BUFFER_SIZE)

    def __contains__(self, name: str) -> bool:
        return name in self._codecs

    def __len__(self) -> int:
        return len(self._codecs)

    # === Constructors ===

    @classmethod
    def from_message_classes(cls, *message_classes, buffer_size: int = DEFAULT_BUFFER_SIZE) -> 'MessageCodecs':
        """
        Build codecs from protobuf-style message classes.

        A message class qualifies if it has DESCRIPTOR.name and a FromString()
        classmethod, as generated protobuf classes do.
        """
        codecs = cls()
        for message_class in message_classes:
            codecs.register(message_class.DESCRIPTOR.name, message_class.FromString, buffer_size)
        return codecs

    @classmethod
    def from_modules(cls, module_names: Iterable[str], buffer_size: int = DEFAULT_BUFFER_SIZE) -> 'MessageCodecs':
        """
        Build codecs from every message class found in the named modules.

        Args:
            module_names: Importable module names, e.g. "roboception.msgs.frame_pb2"

        Raises:
            ImportError: If a module cannot be imported
        """
        classes = []
        for module_name in module_names:
            module = importlib.import_module(module_name)
            for _, obj in inspect.getmembers(module, inspect.isclass):
                if hasattr(obj, "DESCRIPTOR") and hasattr(obj, "FromString"):
                    classes.append(obj)
        logger.info(f"Loaded {len(classes)} message classes from {', '.join(module_names)}")
        return cls.from_message_classes(*classes, buffer_size=buffer_size)

    @classmethod
    def passthrough(cls, names: Iterable[str], buffer_size: int = DEFAULT_BUFFER_SIZE) -> 'MessageCodecs':
        """Codecs that hand back the raw payload bytes for each given type name"""
        codecs = cls()
        for name in names:
            codecs.register(name, bytes, buffer_size)
        return codecs
