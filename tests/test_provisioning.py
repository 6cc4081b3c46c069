#!/usr/bin/env python3
"""
Credential Provisioner and hotspot API client tests
"""

import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import requests

from common.circuit_breaker import reset_circuit_breakers
from provisioning_service.errors import InvalidCredentialInput, ProvisioningRejected, ProvisioningUnavailable
from provisioning_service.hotspot_client import DeviceConfig, HotspotApiClient
from provisioning_service.provisioner import CredentialProvisioner
from tests.fakes import FakeHotspotDevice

DEVICE = DeviceConfig(device_id=1, host="10.0.0.1", port=8728, username="api", password="secret")


def response(status_code=200, body=None, json_error=False):
    resp = MagicMock()
    resp.status_code = status_code
    if json_error:
        resp.json.side_effect = ValueError("not json")
    else:
        resp.json.return_value = body if body is not None else {"success": True}
    return resp


class TestCredentialProvisioner(unittest.TestCase):

    def setUp(self):
        self.device = FakeHotspotDevice()
        self.provisioner = CredentialProvisioner(self.device, max_concurrency=5)

    def test_first_provision_creates_credential(self):
        result = self.provisioner.provision_for_payment("00:11:22:33:44:55", "1h", DEVICE, reference="PAY-1")

        self.assertEqual(result.username, "001122334455")
        self.assertFalse(result.deleted)
        self.assertEqual(result.created_id, "*1")
        user = self.device.credentials["*1"]
        self.assertEqual(user["name"], "001122334455")
        self.assertEqual(user["password"], "001122334455")
        self.assertEqual(user["profile"], "1h")
        self.assertEqual(user["mac-address"], "00:11:22:33:44:55")
        self.assertTrue(user["comment"].startswith("PIX PAY-1 - "))

    def test_provisioning_twice_leaves_one_credential(self):
        """Second call deletes what the first created, whatever the MAC spelling"""
        first = self.provisioner.provision_for_payment("00:11:22:33:44:55", "1h", DEVICE)
        second = self.provisioner.provision_for_payment("00-11-22-33-44-55", "1h", DEVICE)

        self.assertEqual(second.deleted_ids, [first.created_id])
        self.assertEqual(len(self.device.active_for("001122334455")), 1)
        self.assertEqual(list(self.device.credentials), [second.created_id])

    def test_missing_profile_uses_default(self):
        self.provisioner.provision_for_payment("001122334455", None, DEVICE)
        self.assertEqual(self.device.credentials["*1"]["profile"], "default")

    def test_malformed_mac_never_reaches_device(self):
        with self.assertRaises(InvalidCredentialInput):
            self.provisioner.provision_for_payment("not-a-mac", "1h", DEVICE)
        self.assertEqual(self.device.calls, [])

    def test_device_errors_propagate(self):
        self.device.failures.append(ProvisioningUnavailable("timeout"))
        with self.assertRaises(ProvisioningUnavailable):
            self.provisioner.provision_for_payment("001122334455", "1h", DEVICE)
        self.assertEqual(self.provisioner.in_flight, 0)

    def test_concurrency_is_bounded(self):
        lock = threading.Lock()
        state = {"current": 0, "peak": 0}
        device = FakeHotspotDevice()
        original_create = device.create

        def slow_create(cfg, user):
            with lock:
                state["current"] += 1
                state["peak"] = max(state["peak"], state["current"])
            time.sleep(0.05)
            with lock:
                state["current"] -= 1
            return original_create(cfg, user)

        device.create = slow_create
        provisioner = CredentialProvisioner(device, max_concurrency=2)
        macs = [f"00112233445{i}" for i in range(6)]
        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(lambda m: provisioner.provision_for_payment(m, "1h", DEVICE), macs))

        self.assertEqual(len(results), 6)
        self.assertLessEqual(state["peak"], 2)
        self.assertEqual(len(device.credentials), 6)


class TestHotspotApiClient(unittest.TestCase):

    def setUp(self):
        reset_circuit_breakers()
        self.session = MagicMock()
        self.client = HotspotApiClient(base_url="http://hotspot:3001/", token="tkn", timeout=2, session=self.session)

    def tearDown(self):
        reset_circuit_breakers()

    def test_request_carries_device_credentials(self):
        self.session.post.return_value = response(body={"success": True, "data": []})
        self.client.list_by_identifier(DEVICE, "00:11:22:33:44:55")

        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "http://hotspot:3001/users/list")
        self.assertEqual(kwargs["json"]["credentials"],
                         {"ip": "10.0.0.1", "usuario": "api", "senha": "secret", "porta": 8728})
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer tkn")
        self.assertEqual(kwargs["timeout"], 2)

    def test_list_matches_on_mac_field_only(self):
        self.session.post.return_value = response(body={"success": True, "data": [
            {".id": "*1", "name": "someone-else", "mac-address": "00:11:22:33:44:55"},
            {".id": "*2", "name": "001122334455", "mac-address": "AA:BB:CC:DD:EE:FF"},
            {".id": "*3", "mac-address": "garbage"},
            {".id": "*4"},
        ]})
        matches = self.client.list_by_identifier(DEVICE, "0011.2233.4455")
        self.assertEqual([m[".id"] for m in matches], ["*1"])

    def test_delete_and_create_payloads(self):
        self.session.post.return_value = response(body={"success": True, "data": {".id": "*9"}})
        self.client.delete_by_identifier(DEVICE, "*1")
        self.assertEqual(self.session.post.call_args[1]["json"]["userId"], "*1")
        out = self.client.create(DEVICE, {"name": "001122334455"})
        self.assertEqual(self.session.post.call_args[0][0], "http://hotspot:3001/users/create")
        self.assertEqual(out["data"][".id"], "*9")

    def test_timeout_is_unavailable(self):
        self.session.post.side_effect = requests.Timeout("slow")
        with self.assertRaises(ProvisioningUnavailable):
            self.client.create(DEVICE, {"name": "x"})

    def test_server_error_is_unavailable(self):
        self.session.post.return_value = response(503, {"success": False})
        with self.assertRaises(ProvisioningUnavailable):
            self.client.create(DEVICE, {"name": "x"})

    def test_refusal_is_rejected(self):
        self.session.post.return_value = response(401, {"success": False, "error": "bad device login"})
        with self.assertRaises(ProvisioningRejected) as ctx:
            self.client.create(DEVICE, {"name": "x"})
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("bad device login", ctx.exception.message)

    def test_success_false_is_rejected(self):
        self.session.post.return_value = response(200, {"success": False, "message": "profile missing"})
        with self.assertRaises(ProvisioningRejected):
            self.client.create(DEVICE, {"name": "x"})

    def test_non_json_is_rejected(self):
        self.session.post.return_value = response(200, json_error=True)
        with self.assertRaises(ProvisioningRejected):
            self.client.create(DEVICE, {"name": "x"})

    def test_non_object_json_is_rejected(self):
        for body in (["success", True], "ok", 1):
            self.session.post.return_value = response(200, body)
            with self.assertRaises(ProvisioningRejected):
                self.client.create(DEVICE, {"name": "x"})

    def test_other_transport_errors_are_unavailable(self):
        self.session.post.side_effect = requests.exceptions.ChunkedEncodingError("truncated")
        with self.assertRaises(ProvisioningUnavailable):
            self.client.create(DEVICE, {"name": "x"})

    def test_missing_token_rejected_without_calling(self):
        client = HotspotApiClient(base_url="http://hotspot:3001", token="", session=self.session)
        with self.assertRaises(ProvisioningRejected):
            client.create(DEVICE, {"name": "x"})
        self.session.post.assert_not_called()

    def test_circuit_opens_on_repeated_unavailability(self):
        self.session.post.side_effect = requests.ConnectionError("refused")
        for _ in range(3):
            with self.assertRaises(ProvisioningUnavailable):
                self.client.create(DEVICE, {"name": "x"})
        with self.assertRaises(ProvisioningUnavailable) as ctx:
            self.client.create(DEVICE, {"name": "x"})
        self.assertIn("temporarily disabled", ctx.exception.message)
        self.assertEqual(self.session.post.call_count, 3)

    def test_rejections_do_not_open_circuit(self):
        self.session.post.return_value = response(401, {"success": False})
        for _ in range(5):
            with self.assertRaises(ProvisioningRejected):
                self.client.create(DEVICE, {"name": "x"})
        self.assertEqual(self.session.post.call_count, 5)


if __name__ == "__main__":
    unittest.main()
