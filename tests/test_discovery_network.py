import os
import unittest

# This test multicasts on the local network. Run only when explicitly enabled.
RUN_NETWORK = os.environ.get("SCREENCAST_RUN_NETWORK_TESTS", "").strip().lower() in (
    "1",
    "true",
    "yes",
    "on",
)


@unittest.skipUnless(RUN_NETWORK, "Network tests disabled (set SCREENCAST_RUN_NETWORK_TESTS=1)")
class DiscoveryNetworkTests(unittest.TestCase):
    def test_discover_all_on_lan(self):
        from screencast.discovery import DiscoveryCoordinator

        devices = DiscoveryCoordinator({"ssdp_discovery_timeout": 3.0, "mdns_discovery_timeout": 3.0}).discover_all(timeout=5.0)
        if not devices:
            self.skipTest("No renderers answered on this network")

        ids = [d.id for d in devices]
        self.assertEqual(len(ids), len(set(ids)))


if __name__ == "__main__":
    unittest.main()
