import json
import socket
import sys
from pathlib import Path

import httpx
import pytest

# Adjust path to import the package without installing it
src_path = str(Path(__file__).parent.parent / 'src')
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from rc_dynamics import RemoteInterface  # noqa: E402

DEVICE_IP = "127.0.0.1"


def send_datagram(destination, payload=b"\x08\x01"):
    """Send one UDP datagram to an 'ip:port' destination"""
    ip, port = destination.rsplit(":", 1)
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.sendto(payload, (ip, int(port)))


class FakeDevice:
    """
    In-memory REST API of a device, served through httpx.MockTransport.

    Keeps the registered destinations per stream and records every request.
    """

    def __init__(self, firmware="v1.6.0-3-g1234", streams=None):
        self.firmware = firmware
        self.streams = streams or {"pose": "Frame", "imu": "Imu", "dynamics": "Dynamics"}
        self.destinations = {name: [] for name in self.streams}
        self.requests = []
        self.service_responses = {}
        self.status = {"rc_dynamics": "running"}
        self.fail_deletes = set()
        self.on_add = None

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    def count(self, method, path_prefix="/api/v1/"):
        return sum(1 for r in self.requests
                   if r.method == method and r.url.path.startswith(path_prefix))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        parts = request.url.path[len("/api/v1/"):].split("/")

        if parts == ["system"]:
            return httpx.Response(200, json={
                "firmware": {"active_image": {"image_version": self.firmware}}})

        if parts == ["datastreams"]:
            return httpx.Response(200, json=[
                {"name": name, "protobuf": message_type}
                for name, message_type in self.streams.items()])

        if parts[0] == "datastreams" and len(parts) == 2:
            return self._datastream(request, parts[1])

        if parts[0] == "nodes" and parts[2:] == ["status"]:
            return httpx.Response(200, json={"status": self.status.get(parts[1], "stopped")})

        if parts[0] == "nodes" and len(parts) == 4 and parts[2] == "services":
            status, body = self.service_responses.get(
                (parts[1], parts[3]),
                (200, {"response": {"accepted": True, "current_state": "RUNNING"}}))
            if isinstance(body, str):
                return httpx.Response(status, text=body)
            return httpx.Response(status, json=body)

        return httpx.Response(404, text="not found")

    def _datastream(self, request, stream):
        if stream not in self.streams:
            return httpx.Response(404, text=f"no such stream {stream}")
        registered = self.destinations[stream]

        if request.method == "GET":
            return httpx.Response(200, json={"name": stream, "destinations": list(registered)})

        if request.method == "PUT":
            destination = request.url.params["destination"]
            registered.append(destination)
            if self.on_add:
                self.on_add(stream, destination)
            return httpx.Response(200, json={"name": stream, "destinations": list(registered)})

        if request.method == "DELETE":
            destination = request.url.params.get("destination")
            targets = [destination] if destination else json.loads(request.read())["destination"]
            for target in targets:
                if target in self.fail_deletes:
                    return httpx.Response(500, text="internal error")
            for target in targets:
                if target in registered:
                    registered.remove(target)
            return httpx.Response(200, json={"name": stream, "destinations": list(registered)})

        return httpx.Response(405, text="method not allowed")


@pytest.fixture
def fake_device():
    return FakeDevice()


@pytest.fixture
def remote(fake_device):
    interface = RemoteInterface(DEVICE_IP, transport=fake_device.transport)
    yield interface
    interface.close()
