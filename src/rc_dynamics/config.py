"""
Client configuration

Settings can be given in code or loaded from a TOML file:

    [device]
    address = "192.168.0.12"
    request_timeout_ms = 5000

    [stream]
    interface = "eth0"
    port = 0
    confirmation_timeout_ms = 5000
    poll_timeout_ms = 100

    [module_states]
    rc_dynamics = ["IDLE", "RUNNING", "FATAL", ...]

The legal module states must be kept in sync with the device firmware; the
built-in defaults match current firmware and can be overridden per module.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import toml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_MS = 5000
DEFAULT_CONFIRMATION_TIMEOUT_MS = 5000
DEFAULT_POLL_TIMEOUT_MS = 100

DEFAULT_MODULE_STATES: Dict[str, Tuple[str, ...]] = {
    "rc_dynamics": (
        "IDLE",
        "RUNNING",
        "FATAL",
        "WAITING_FOR_INS",
        "WAITING_FOR_INS_AND_SLAM",
        "WAITING_FOR_SLAM",
        "RUNNING_WITH_SLAM",
    ),
    "rc_slam": (
        "IDLE",
        "RUNNING",
        "FATAL",
        "WAITING_FOR_DATA",
        "RESTARTING",
        "RESETTING",
        "HALTED",
    ),
}


@dataclass
class ClientConfig:
    """Settings for talking to one device and receiving its streams"""
    device_address: Optional[str] = None
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS

    # Stream reception
    interface: str = ""
    port: int = 0
    confirmation_timeout_ms: int = DEFAULT_CONFIRMATION_TIMEOUT_MS
    poll_timeout_ms: int = DEFAULT_POLL_TIMEOUT_MS

    module_states: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_MODULE_STATES))

    def __post_init__(self):
        for name in ("request_timeout_ms", "confirmation_timeout_ms", "poll_timeout_ms", "port"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'ClientConfig':
        """
        Build a config from a parsed TOML document.

        Missing keys keep their defaults; [module_states] entries replace the
        default state list of the named module only.
        """
        device = config.get('device', {})
        stream = config.get('stream', {})

        module_states = dict(DEFAULT_MODULE_STATES)
        for module, states in config.get('module_states', {}).items():
            if not isinstance(states, list) or not all(isinstance(s, str) for s in states):
                raise ConfigurationError(f"module_states.{module} must be a list of state names")
            module_states[module] = tuple(states)

        return cls(
            device_address=device.get('address'),
            request_timeout_ms=int(device.get('request_timeout_ms', DEFAULT_REQUEST_TIMEOUT_MS)),
            interface=stream.get('interface', ""),
            port=int(stream.get('port', 0)),
            confirmation_timeout_ms=int(stream.get('confirmation_timeout_ms',
                                                   DEFAULT_CONFIRMATION_TIMEOUT_MS)),
            poll_timeout_ms=int(stream.get('poll_timeout_ms', DEFAULT_POLL_TIMEOUT_MS)),
            module_states=module_states,
        )


def load_config(config_path: Union[str, Path]) -> ClientConfig:
    """
    Load a ClientConfig from a TOML file.

    Raises:
        ConfigurationError: If the file is missing or not valid TOML
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            config = toml.load(f)
    except toml.TomlDecodeError as e:
        raise ConfigurationError(f"Error loading configuration {config_path}: {e}") from e

    logger.info(f"Loaded configuration from {config_path}")
    return ClientConfig.from_dict(config)
