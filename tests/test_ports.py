import os
import socket
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ensemble.utils.ports import LOOPBACK, PORT_RANGE, get_random_port, is_port_available


class PortsTest(unittest.TestCase):
    def test_random_port_is_free_and_in_range(self):
        port = get_random_port()
        self.assertTrue(PORT_RANGE[0] <= port < PORT_RANGE[1])
        self.assertTrue(is_port_available(port))

    def test_port_held_on_ipv4_loopback_is_taken(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((LOOPBACK, 0))
            s.listen()
            port = s.getsockname()[1]
            self.assertFalse(is_port_available(port))


if __name__ == "__main__":
    unittest.main()
