import threading
import unittest
from unittest.mock import MagicMock

from conftest import DEVICE_IP, FakeDevice
from rc_dynamics import DeviceRegistry, RemoteInterface, TransportError


class TestDeviceRegistry(unittest.TestCase):

    def test_same_address_same_handle(self):
        factory = MagicMock(side_effect=lambda address, timeout: MagicMock(device_address=address))
        registry = DeviceRegistry(factory)

        first = registry.get_or_create_device("192.168.0.12")
        second = registry.get_or_create_device("192.168.0.12", request_timeout_ms=100)
        other = registry.get_or_create_device("192.168.0.13")

        self.assertIs(first, second)
        self.assertIsNot(first, other)
        self.assertEqual(factory.call_count, 2)
        self.assertEqual(registry.addresses(), ["192.168.0.12", "192.168.0.13"])
        self.assertIn("192.168.0.12", registry)
        self.assertEqual(len(registry), 2)

    def test_failed_creation_stores_nothing(self):
        factory = MagicMock(side_effect=TransportError("unreachable"))
        registry = DeviceRegistry(factory)

        with self.assertRaises(TransportError):
            registry.get_or_create_device("192.168.0.12")
        self.assertIsNone(registry.get("192.168.0.12"))
        self.assertEqual(len(registry), 0)

    def test_concurrent_first_use_creates_once(self):
        created = []

        def slow_factory(address, timeout):
            created.append(address)
            return MagicMock(device_address=address)

        registry = DeviceRegistry(slow_factory)
        results = []
        threads = [threading.Thread(target=lambda: results.append(
            registry.get_or_create_device("192.168.0.12"))) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(created, ["192.168.0.12"])
        self.assertTrue(all(r is results[0] for r in results))

    def test_close_all(self):
        device = FakeDevice(firmware="v1.6.0")
        registry = DeviceRegistry(transport=device.transport)

        remote = registry.get_or_create_device(DEVICE_IP)
        self.assertIsInstance(remote, RemoteInterface)
        remote.add_destination_to_stream("pose", "127.0.0.1:30000")
        remote.add_destination_to_stream("imu", "127.0.0.1:30001")
        device.fail_deletes.add("127.0.0.1:30001")

        stale = registry.close_all()

        self.assertEqual(stale, {DEVICE_IP: {"imu": ["127.0.0.1:30001"]}})
        self.assertEqual(device.destinations["pose"], [])
        self.assertTrue(remote.closed)
        self.assertEqual(len(registry), 0)

    def test_context_manager(self):
        handle = MagicMock()
        handle.close.return_value = {}
        with DeviceRegistry(lambda address, timeout: handle) as registry:
            registry.get_or_create_device("192.168.0.12")
        handle.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
