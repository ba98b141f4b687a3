"""
Remote Interface - REST control plane of a streaming device

Talks to the device's REST API (base path /api/v1) to
- list the available data streams and their message types
- add, list and delete stream destinations
- start, stop and query processing modules (rc_dynamics, rc_slam)
- invoke long-running services (e.g. saving the SLAM map)

A RemoteInterface keeps track of every destination it requested and deletes
them again on close(). Destinations it fails to delete are logged so they
can be removed manually.

Example:
    with RemoteInterface("192.168.0.12") as device:
        device.start()
        with device.create_receiver_for_stream("pose", codecs=codecs) as session:
            frame = session.receive()
"""

import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import httpx

from .codecs import MessageCodecs
from .config import (
    DEFAULT_CONFIRMATION_TIMEOUT_MS,
    DEFAULT_MODULE_STATES,
    DEFAULT_POLL_TIMEOUT_MS,
    DEFAULT_REQUEST_TIMEOUT_MS,
)
from .errors import (
    DynamicsError,
    InvalidAddressError,
    InvalidStateError,
    NotAcceptedError,
    ProtocolMismatchError,
    StreamNotAvailableError,
    TransportError,
)
from .net_utils import is_valid_ip_address
from .stream_session import StreamSession

logger = logging.getLogger(__name__)

API_PATH = "/api/v1"

DYNAMICS_MODULE = "rc_dynamics"
SLAM_MODULE = "rc_slam"

# Firmware from this version on accepts a JSON list of destinations in one
# DELETE request; older firmware needs one request per destination.
BULK_DELETE_MIN_VERSION = (1, 7, 0)

_VERSION_PATTERN = re.compile(r"v(\d+)\.(\d+)\.(\d+)")


class ModuleState(Enum):
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class StreamDescriptor:
    """A stream as advertised by the device catalog"""
    name: str
    message_type: str


@dataclass(frozen=True)
class ReturnCode:
    """Result of a long-running service call"""
    value: int
    message: str

    @property
    def ok(self) -> bool:
        return self.value >= 0


@dataclass(frozen=True)
class TrajectoryTime:
    """Point in time for trajectory queries, absolute or relative to start/end"""
    sec: int
    nsec: int = 0
    is_relative: bool = False

    @classmethod
    def relative(cls, sec: int, nsec: int = 0) -> 'TrajectoryTime':
        return cls(sec, nsec, True)

    @classmethod
    def absolute(cls, sec: int, nsec: int = 0) -> 'TrajectoryTime':
        return cls(sec, nsec, False)

    def to_json(self) -> Dict[str, int]:
        return {"sec": self.sec, "nsec": self.nsec}


def parse_firmware_version(image_version: str) -> Tuple[int, int, int]:
    """
    Parse 'v1.7.2-...' style image versions.

    Returns:
        (major, minor, patch), or (0, 0, 0) if the string has no version
    """
    match = _VERSION_PATTERN.search(image_version or "")
    if not match:
        return (0, 0, 0)
    return tuple(int(part) for part in match.groups())


class RemoteInterface:
    """
    Client for one device's REST control plane.

    The stream catalog and firmware version are fetched once on construction
    and never refreshed; create a new interface if the device changes.

    Thread-safe: registrations and deletions on the same stream are
    serialized, so concurrent sessions cannot lose each other's updates.
    """

    def __init__(
        self,
        device_address: str,
        request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
        module_states: Optional[Mapping[str, Sequence[str]]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Connect to a device and fetch its version and stream catalog.

        Args:
            device_address: Device IPv4 address, e.g. "192.168.0.12"
            request_timeout_ms: Timeout for ordinary REST calls
            module_states: Legal state names per module (default: built-in)
            transport: Custom httpx transport (e.g. httpx.MockTransport)

        Raises:
            InvalidAddressError: If device_address is not a valid IPv4 address
            TransportError: If the device cannot be reached or rejects a request
            ProtocolMismatchError: If the device answers in an unknown format
        """
        if not is_valid_ip_address(device_address):
            raise InvalidAddressError(device_address)

        self.device_address = device_address
        self.base_url = f"http://{device_address}{API_PATH}"
        self.request_timeout_ms = request_timeout_ms
        self.module_states: Dict[str, Tuple[str, ...]] = {
            module: tuple(states)
            for module, states in (module_states or DEFAULT_MODULE_STATES).items()
        }

        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=request_timeout_ms / 1000.0,
            transport=transport,
        )
        self._closed = False

        try:
            self.firmware_version = self._fetch_firmware_version()
            self._catalog: Dict[str, StreamDescriptor] = self._fetch_catalog()
        except Exception:
            self._client.close()
            raise

        # Destinations requested by this process, per stream
        self._requested: Dict[str, List[str]] = {name: [] for name in self._catalog}
        self._stream_locks = {name: threading.Lock() for name in self._catalog}

        logger.info(
            f"Connected to device {device_address} (firmware "
            f"{'.'.join(map(str, self.firmware_version))}, streams: "
            f"{', '.join(self._catalog) or 'none'})"
        )

    # === Catalog ===

    def get_available_streams(self) -> List[str]:
        """Names of all streams the device offers"""
        return list(self._catalog)

    def get_stream_descriptors(self) -> List[StreamDescriptor]:
        return list(self._catalog.values())

    def get_message_type_of_stream(self, stream: str) -> str:
        """
        Message type name needed to decode a stream's datagrams.

        Args:
            stream: Stream name, e.g. "pose" or "dynamics"

        Returns:
            Message type name, e.g. "Frame" or "Dynamics"
        """
        self.check_stream_type_available(stream)
        return self._catalog[stream].message_type

    def check_stream_type_available(self, stream: str):
        """Raise StreamNotAvailableError if stream is not in the catalog"""
        if stream not in self._catalog:
            raise StreamNotAvailableError(stream, self.device_address)

    @property
    def supports_bulk_delete(self) -> bool:
        return self.firmware_version >= BULK_DELETE_MIN_VERSION

    @property
    def swagger_url(self) -> str:
        return f"http://{self.device_address}/api/swagger/"

    # === Destinations ===

    def get_destinations_of_stream(self, stream: str) -> List[str]:
        """
        Destinations currently registered on the device for a stream.

        Returns:
            Destinations as 'ip:port' strings, including those of other clients
        """
        self.check_stream_type_available(stream)
        response = self._request("GET", f"/datastreams/{stream}")
        body = self._json(response)
        destinations = body.get("destinations") if isinstance(body, dict) else None
        if not isinstance(destinations, list):
            raise ProtocolMismatchError("Missing destinations list",
                                        str(response.url), response.text)
        return [str(d) for d in destinations]

    def get_requested_destinations_of_stream(self, stream: str) -> List[str]:
        """Destinations of one stream this interface requested and has not deleted yet"""
        self.check_stream_type_available(stream)
        with self._stream_locks[stream]:
            return list(self._requested[stream])

    def get_requested_destinations(self) -> Dict[str, List[str]]:
        """
        Destinations this interface requested and has not deleted yet.

        Returns:
            Dictionary mapping stream name to its destinations; streams
            without requested destinations are omitted
        """
        requested = {}
        for name in self._catalog:
            with self._stream_locks[name]:
                if self._requested[name]:
                    requested[name] = list(self._requested[name])
        return requested

    def add_destination_to_stream(self, stream: str, destination: str):
        """
        Ask the device to send a stream to destination.

        Args:
            stream: Stream name, e.g. "pose"
            destination: 'ip:port', e.g. "192.168.0.1:30000"
        """
        self.check_stream_type_available(stream)
        with self._stream_locks[stream]:
            self._request("PUT", f"/datastreams/{stream}", params={"destination": destination})
            self._requested[stream].append(destination)
        logger.info(f"Added destination {destination} to stream {stream}")

    def delete_destination_from_stream(self, stream: str, destination: str):
        """Ask the device to stop sending a stream to destination"""
        self.check_stream_type_available(stream)
        with self._stream_locks[stream]:
            self._request("DELETE", f"/datastreams/{stream}", params={"destination": destination})
            self._forget(stream, [destination])
        logger.info(f"Deleted destination {destination} from stream {stream}")

    def delete_destinations_from_stream(self, stream: str, destinations: Iterable[str]):
        """
        Delete several destinations of a stream.

        Newer firmware gets a single request; older firmware gets one request
        per destination, each of them best-effort. Only destinations the
        device confirmed are forgotten locally.

        Raises:
            TransportError: If any destination could not be deleted; the error
                names those destinations
        """
        self.check_stream_type_available(stream)
        destinations = list(destinations)
        if not destinations:
            return

        path = f"/datastreams/{stream}"
        failed = []
        with self._stream_locks[stream]:
            if self.supports_bulk_delete:
                self._request("DELETE", path, json={"destination": destinations})
                removed = destinations
            else:
                removed = []
                for destination in destinations:
                    try:
                        self._request("DELETE", path, params={"destination": destination})
                        removed.append(destination)
                    except TransportError as e:
                        logger.warning(f"Could not delete destination {destination} "
                                       f"from stream {stream}: {e}")
                        failed.append(destination)
            self._forget(stream, removed)

        logger.info(f"Deleted {len(removed)} destination(s) from stream {stream}")
        if failed:
            raise TransportError(
                f"Could not delete destinations [{', '.join(failed)}] from stream {stream}",
                url=f"{self.base_url}{path}",
            )

    def delete_all_destinations_from_stream(self, stream: str):
        """Delete every destination of a stream, including other clients'"""
        destinations = self.get_destinations_of_stream(stream)
        self.delete_destinations_from_stream(stream, destinations)

    def cleanup_requested_streams(self) -> Dict[str, List[str]]:
        """
        Delete all destinations this interface still has registered.

        Returns:
            Stale destinations per stream that could not be deleted
        """
        stale = {}
        for stream, destinations in self.get_requested_destinations().items():
            try:
                self.delete_destinations_from_stream(stream, destinations)
            except DynamicsError as e:
                logger.warning(f"Could not clean up destinations of stream {stream}: {e}")
            remaining = self.get_requested_destinations_of_stream(stream)
            if remaining:
                stale[stream] = remaining
        return stale

    def _forget(self, stream: str, destinations: Iterable[str]):
        # Caller holds the stream lock; one entry per successful request
        requested = self._requested[stream]
        for destination in destinations:
            if destination in requested:
                requested.remove(destination)

    # === Streams ===

    def create_receiver_for_stream(
        self,
        stream: str,
        interface: str = "",
        port: int = 0,
        codecs: Optional[MessageCodecs] = None,
        confirmation_timeout_ms: int = DEFAULT_CONFIRMATION_TIMEOUT_MS,
        poll_timeout_ms: int = DEFAULT_POLL_TIMEOUT_MS,
    ) -> StreamSession:
        """
        Open a session receiving a stream on this host.

        Binds a local socket, registers it as destination, waits for the first
        message and returns the active session. Closing the session deletes
        the destination again.

        Args:
            stream: Stream name, e.g. "pose"
            interface: Local interface to receive on ("" = pick automatically)
            port: Local port (0 = ephemeral)
            codecs: Decoders for the stream's message type
            confirmation_timeout_ms: How long to wait for the first message
            poll_timeout_ms: Receive timeout once the stream is established

        Raises:
            StreamNotAvailableError: Unknown stream (no network call is made)
            UnexpectedReceiveTimeout: Nothing arrived within the confirmation window
        """
        return StreamSession.open(
            self,
            stream,
            interface=interface,
            port=port,
            codecs=codecs,
            confirmation_timeout_ms=confirmation_timeout_ms,
            poll_timeout_ms=poll_timeout_ms,
        )

    # === Modules ===

    def start(self, restart: bool = False) -> str:
        """Start rc_dynamics (or restart it if already running and restart=True)"""
        return self.call_module_service(DYNAMICS_MODULE, "restart" if restart else "start")

    def stop(self) -> str:
        return self.call_module_service(DYNAMICS_MODULE, "stop")

    def restart(self) -> str:
        return self.call_module_service(DYNAMICS_MODULE, "restart")

    def start_slam(self) -> str:
        return self.call_module_service(DYNAMICS_MODULE, "start_slam")

    def stop_slam(self) -> str:
        return self.call_module_service(DYNAMICS_MODULE, "stop_slam")

    def restart_slam(self) -> str:
        return self.call_module_service(DYNAMICS_MODULE, "restart_slam")

    def reset_slam(self) -> str:
        return self.call_module_service(SLAM_MODULE, "reset")

    def get_state(self, module: str = DYNAMICS_MODULE) -> ModuleState:
        """Poll whether a module is running"""
        response = self._request("GET", f"/nodes/{module}/status")
        body = self._json(response)
        status = body.get("status") if isinstance(body, dict) else None
        if not isinstance(status, str):
            raise ProtocolMismatchError(f"Missing status of module {module}",
                                        str(response.url), response.text)
        return ModuleState.RUNNING if status == "running" else ModuleState.STOPPED

    def call_module_service(self, module: str, service: str) -> str:
        """
        Call a state-changing service of a module.

        Newer firmware reports the entered state by name, older firmware by
        numeric code; both are returned as string.

        Returns:
            Name (or numeric code) of the state the module entered

        Raises:
            InvalidStateError: Named state is not legal for this module
            NotAcceptedError: The device refused the call
            ProtocolMismatchError: Response matches neither firmware schema
        """
        response = self._request("PUT", f"/nodes/{module}/services/{service}")
        body = self._json(response)
        reply = body.get("response") if isinstance(body, dict) else None
        if not isinstance(reply, dict):
            reply = {}

        state = reply.get("current_state")
        if isinstance(state, str):
            legal = self.module_states.get(module)
            if legal is not None and state not in legal:
                raise InvalidStateError(state, module, str(response.url), response.text)

            accepted = reply.get("accepted", True)
            if not isinstance(accepted, bool):
                raise ProtocolMismatchError(f"Malformed 'accepted' flag from {module}/{service}",
                                            str(response.url), response.text)
            if not accepted:
                raise NotAcceptedError(service)

            logger.info(f"{module}/{service}: entered state {state}")
            return state

        # Older firmware: numeric state code
        code = reply.get("enteredState")
        if isinstance(code, int) and not isinstance(code, bool):
            logger.info(f"{module}/{service}: entered state {code} (legacy response)")
            return str(code)

        raise ProtocolMismatchError(
            f"Could not parse the response of service call {module}/{service}",
            str(response.url), response.text)

    # === Long-running services ===

    def call_long_running_service(
        self,
        module: str,
        service: str,
        timeout_ms: int,
        args: Optional[Dict[str, Any]] = None,
    ) -> ReturnCode:
        """
        Call a service that may exceed the ordinary request timeout.

        Args:
            module: Module name, e.g. "rc_slam"
            service: Service name, e.g. "save_map"
            timeout_ms: Timeout for this call
            args: Optional service arguments

        Returns:
            The service's return code
        """
        response = self._request(
            "PUT", f"/nodes/{module}/services/{service}",
            timeout_ms=timeout_ms,
            json={"args": args} if args else None,
        )
        body = self._json(response)
        try:
            return_code = body["response"]["return_code"]
            value = return_code["value"]
            message = return_code["message"]
        except (KeyError, TypeError):
            raise ProtocolMismatchError(
                f"Could not parse the return code of service call {module}/{service}",
                str(response.url), response.text) from None
        if not isinstance(value, int) or isinstance(value, bool):
            raise ProtocolMismatchError(f"Malformed return code of {module}/{service}",
                                        str(response.url), response.text)
        return ReturnCode(value, str(message))

    def save_slam_map(self, timeout_ms: int = 10000) -> ReturnCode:
        return self.call_long_running_service(SLAM_MODULE, "save_map", timeout_ms)

    def load_slam_map(self, timeout_ms: int = 10000) -> ReturnCode:
        return self.call_long_running_service(SLAM_MODULE, "load_map", timeout_ms)

    def remove_slam_map(self, timeout_ms: int = 10000) -> ReturnCode:
        return self.call_long_running_service(SLAM_MODULE, "remove_map", timeout_ms)

    def get_slam_trajectory(
        self,
        start: TrajectoryTime = TrajectoryTime.relative(0),
        end: TrajectoryTime = TrajectoryTime.relative(0),
        timeout_ms: int = 10000,
    ) -> Dict[str, Any]:
        """
        Fetch the SLAM trajectory between start and end.

        Relative times count from the trajectory's start (for start) and
        end (for end); the defaults return the full trajectory.

        Returns:
            The trajectory as sent by the device (name, parent, producer,
            timestamp, poses)
        """
        args: Dict[str, Any] = {"start_time": start.to_json(), "end_time": end.to_json()}
        if start.is_relative:
            args["start_time_relative"] = True
        if end.is_relative:
            args["end_time_relative"] = True

        response = self._request(
            "PUT", f"/nodes/{SLAM_MODULE}/services/get_trajectory",
            timeout_ms=timeout_ms, json={"args": args},
        )
        body = self._json(response)
        try:
            trajectory = body["response"]["trajectory"]
        except (KeyError, TypeError):
            raise ProtocolMismatchError("Missing trajectory in response",
                                        str(response.url), response.text) from None
        return trajectory

    # === Lifecycle ===

    def close(self) -> Dict[str, List[str]]:
        """
        Delete all requested destinations and release the HTTP client.

        Never raises. Destinations that could not be deleted are logged with
        instructions for manual removal.

        Returns:
            Stale destinations per stream (empty if cleanup succeeded)
        """
        if self._closed:
            return {}

        stale = self.cleanup_requested_streams()
        for stream, destinations in stale.items():
            logger.warning(
                f"Could not stop all previously requested streams of type {stream} "
                f"on device {self.device_address}. Please check device manually "
                f"({self.base_url}/datastreams/{stream}) for not containing any of the "
                f"following legacy streams and delete them otherwise, e.g. using the "
                f"swagger UI ({self.swagger_url}): [{', '.join(destinations)}]"
            )

        self._client.close()
        self._closed = True
        logger.info(f"Remote interface to {self.device_address} closed")
        return stale

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        return f"RemoteInterface({self.device_address!r})"

    # === Internal ===

    def _fetch_firmware_version(self) -> Tuple[int, int, int]:
        response = self._request("GET", "/system")
        body = self._json(response)
        try:
            image_version = body["firmware"]["active_image"]["image_version"]
        except (KeyError, TypeError):
            raise ProtocolMismatchError("Missing firmware image version",
                                        str(response.url), response.text) from None
        version = parse_firmware_version(str(image_version))
        if version == (0, 0, 0):
            logger.warning(f"Could not parse firmware version '{image_version}', "
                           f"assuming legacy firmware")
        return version

    def _fetch_catalog(self) -> Dict[str, StreamDescriptor]:
        response = self._request("GET", "/datastreams")
        body = self._json(response)
        if not isinstance(body, list):
            raise ProtocolMismatchError("Stream catalog is not a list",
                                        str(response.url), response.text)

        catalog = {}
        for entry in body:
            if not isinstance(entry, dict) or "name" not in entry:
                raise ProtocolMismatchError("Malformed stream catalog entry",
                                            str(response.url), response.text)
            message_type = entry.get("protobuf", entry.get("messageType"))
            if message_type is None:
                raise ProtocolMismatchError(f"No message type for stream {entry['name']}",
                                            str(response.url), response.text)
            catalog[entry["name"]] = StreamDescriptor(entry["name"], message_type)
        return catalog

    def _request(
        self,
        method: str,
        path: str,
        timeout_ms: Optional[int] = None,
        **kwargs,
    ) -> httpx.Response:
        if self._closed:
            raise TransportError(f"Remote interface to {self.device_address} is closed")

        timeout = (timeout_ms if timeout_ms is not None else self.request_timeout_ms) / 1000.0
        logger.debug(f"{method} {self.base_url}{path} {kwargs or ''}")
        try:
            response = self._client.request(method, path, timeout=timeout, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} request to device {self.device_address} failed: {e}",
                                 url=f"{self.base_url}{path}") from e

        if not response.is_success:
            raise TransportError(
                f"{method} request rejected by device {self.device_address}",
                status_code=response.status_code,
                url=str(response.url),
                body=response.text,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            raise ProtocolMismatchError("Response is not valid JSON",
                                        str(response.url), response.text) from None
