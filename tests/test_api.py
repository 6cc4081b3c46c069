#!/usr/bin/env python3
"""
HTTP tests for the webhook receiver and the admin control surface, using
FastAPI's TestClient against an app wired to fakes.
"""

import json
import unittest

from fastapi.testclient import TestClient

from common.security import mint_internal_jwt, sign_webhook_body
from common.settings import settings
from reconciliation_service.main import Components, create_app
from tests.fakes import OWNER, PLATFORM, DatabaseTestCase, FakeGateway, FakeHotspotDevice


class ApiTestCase(DatabaseTestCase):

    def setUp(self):
        super().setUp()
        self.gateway = FakeGateway()
        self.device = FakeHotspotDevice()
        self.components = Components(self.Session, gateway=self.gateway, hotspot_client=self.device,
                                     poll_interval_seconds=60)
        self.components.ledger.platform_account_id = PLATFORM
        self.client = TestClient(create_app(self.components, autostart_polling=False))
        self.client.__enter__()
        self.admin = {"Authorization": f"Bearer {mint_internal_jwt(settings.admin_audience)}"}

    def tearDown(self):
        self.client.__exit__(None, None, None)
        super().tearDown()

    def post_webhook(self, provider, body, headers=None):
        raw = body if isinstance(body, bytes) else json.dumps(body).encode()
        return self.client.post(f"/webhook/{provider}", content=raw,
                                headers={"Content-Type": "application/json", **(headers or {})})

    def drain(self):
        self.assertTrue(self.components.queue.wait_idle(timeout=10))


class TestHealth(ApiTestCase):

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["status"], "healthy")
        self.assertFalse(data["polling"])
        self.assertIn("circuit_breakers", data)
        self.assertIn("X-Trace-ID", response.headers)


class TestWebhook(ApiTestCase):

    def test_mercadopago_payment_is_queued_and_completed(self):
        payment = self.add_payment(ref="123456")
        self.gateway.statuses["123456"] = "approved"
        response = self.post_webhook("mercadopago", {"type": "payment", "action": "payment.updated",
                                                     "data": {"id": "123456"}})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"received": True, "queued": True, "reason": None})

        self.drain()
        self.assertEqual(self.gateway.calls, ["123456"])
        self.assertEqual(self.reload("123456").status, "completed")
        self.assertEqual(len(self.ledger_rows(payment.id)), 2)
        self.assertEqual(len(self.device.created), 1)
        print("✅ Webhook drove payment to completed")

    def test_numeric_payment_id(self):
        self.add_payment(ref="777")
        self.gateway.statuses["777"] = "approved"
        response = self.post_webhook("mercadopago", {"type": "payment", "data": {"id": 777}})
        self.assertTrue(response.json()["queued"])
        self.drain()
        self.assertEqual(self.gateway.calls, ["777"])
        self.assertEqual(self.reload("777").status, "completed")

    def test_status_in_body_is_not_trusted(self):
        """Only the gateway decides whether a payment is paid"""
        payment = self.add_payment(ref="PAY-9")
        self.gateway.statuses["PAY-9"] = "pending"
        for provider, body in [
            ("generic", {"external_reference": "PAY-9", "status": "approved"}),
            ("mercadopago", {"type": "payment", "data": {"id": "PAY-9"}, "status": "approved"}),
        ]:
            self.assertTrue(self.post_webhook(provider, body).json()["queued"])
        self.drain()

        self.assertEqual(self.gateway.calls, ["PAY-9", "PAY-9"])
        self.assertEqual(self.reload("PAY-9").status, "pending")
        self.assertEqual(self.device.created, [])
        self.assertEqual(self.ledger_rows(payment.id), [])
        self.assertEqual((self.balance(PLATFORM), self.balance(OWNER)), (0, 0))
        print("✅ Forged approved webhook ignored, gateway still pending")

    def test_generic_provider(self):
        self.add_payment(ref="PAY-9")
        self.gateway.statuses["PAY-9"] = "rejected"
        response = self.post_webhook("generic", {"external_reference": "PAY-9"})
        self.assertTrue(response.json()["queued"])
        self.drain()
        self.assertEqual(self.reload("PAY-9").status, "rejected")

    def test_gateway_outage_leaves_payment_for_the_poller(self):
        self.add_payment(ref="PAY-9")
        self.gateway.unavailable = True
        self.post_webhook("generic", {"external_reference": "PAY-9"})
        self.drain()
        self.assertEqual(self.reload("PAY-9").status, "pending")

    def test_duplicate_deliveries_single_effect(self):
        self.add_payment(ref="123")
        self.gateway.statuses["123"] = "approved"
        for _ in range(5):
            self.post_webhook("mercadopago", {"type": "payment", "data": {"id": "123"}})
        self.drain()
        self.assertEqual(len(self.device.created), 1)
        self.assertEqual(self.balance(PLATFORM) + self.balance(OWNER), 10000)

    def test_non_payment_topic_acknowledged(self):
        response = self.post_webhook("mercadopago", {"type": "merchant_order", "data": {"id": "1"}})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["reason"], "ignored_topic")

    def test_unknown_payment_acknowledged_and_dropped(self):
        response = self.post_webhook("mercadopago", {"type": "payment", "data": {"id": "nope"}})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"received": True, "queued": False, "reason": "unknown_payment"})
        self.assertEqual(self.components.queue.stats()["submitted"], 0)

    def test_malformed_bodies_rejected(self):
        cases = [
            ("mercadopago", b"{not json"),
            ("mercadopago", b"[1, 2]"),
            ("mercadopago", {"type": "payment", "data": {}}),
            ("mercadopago", {"data": {"id": "1"}}),
            ("generic", {"status": "approved"}),
            ("generic", {"external_reference": ""}),
        ]
        for provider, body in cases:
            response = self.post_webhook(provider, body)
            self.assertEqual(response.status_code, 400, body)
            self.assertEqual(response.json()["error"]["code"], "INVALID_WEBHOOK")
            self.assertFalse(response.json()["success"])

    def test_unsupported_provider(self):
        response = self.post_webhook("paypal", {"id": "1"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "UNSUPPORTED_PROVIDER")

    def test_signature_enforced_when_secret_configured(self):
        self.add_payment(ref="55")
        self.components.webhooks.webhook_secret = "s3cret"
        body = json.dumps({"type": "payment", "data": {"id": "55"}}).encode()

        bad = self.post_webhook("mercadopago", body, headers={"X-Signature": "deadbeef"})
        self.assertEqual(bad.status_code, 401)
        self.assertEqual(bad.json()["error"]["code"], "INVALID_SIGNATURE")

        missing = self.post_webhook("mercadopago", body)
        self.assertEqual(missing.status_code, 401)

        good = self.post_webhook("mercadopago", body,
                                 headers={"X-Signature": f"sha256={sign_webhook_body('s3cret', body)}"})
        self.assertEqual(good.status_code, 200)
        self.assertTrue(good.json()["queued"])


class TestAdminAuth(ApiTestCase):

    def test_missing_token(self):
        response = self.client.get("/admin/polling/stats")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "UNAUTHORIZED")

    def test_wrong_audience(self):
        headers = {"Authorization": f"Bearer {mint_internal_jwt('ledger')}"}
        self.assertEqual(self.client.get("/admin/polling/stats", headers=headers).status_code, 401)


class TestAdminPayments(ApiTestCase):

    def test_register_payment_with_default_commission(self):
        response = self.client.post("/admin/payments", headers=self.admin, json={
            "external_reference": "MP-1", "mac_address": "00-11-22-33-44-55", "plan_id": 1, "device_id": 1,
            "amount_total": "10.00",
        })
        self.assertEqual(response.status_code, 201, response.text)
        data = response.json()
        self.assertEqual(data["mac_address"], "001122334455")
        self.assertEqual(data["status"], "pending")
        self.assertEqual(data["amount_total"], "10.00")
        self.assertEqual(data["amount_primary_share"], "1.00")
        self.assertEqual(data["amount_secondary_share"], "9.00")

    def test_register_with_explicit_split(self):
        response = self.client.post("/admin/payments", headers=self.admin, json={
            "external_reference": "MP-2", "mac_address": "001122334455", "plan_id": 1, "device_id": 1,
            "amount_total": "100.00", "amount_primary_share": "70.00",
        })
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["amount_secondary_share"], "30.00")

    def test_register_rejections(self):
        base = {"external_reference": "MP-3", "mac_address": "001122334455", "plan_id": 1, "device_id": 1,
                "amount_total": "10.00"}
        self.assertEqual(self.client.post("/admin/payments", headers=self.admin, json=base).status_code, 201)

        duplicate = self.client.post("/admin/payments", headers=self.admin, json=base)
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["error"]["code"], "DUPLICATE_PAYMENT")

        bad_mac = self.client.post("/admin/payments", headers=self.admin,
                                   json={**base, "external_reference": "MP-4", "mac_address": "xyz"})
        self.assertEqual(bad_mac.status_code, 400)
        self.assertEqual(bad_mac.json()["error"]["code"], "INVALID_CREDENTIAL_INPUT")

        bad_split = self.client.post("/admin/payments", headers=self.admin, json={
            **base, "external_reference": "MP-5", "amount_primary_share": "5.00", "amount_secondary_share": "4.00"})
        self.assertEqual(bad_split.json()["error"]["code"], "PAYMENT_INTEGRITY")

        unknown_device = self.client.post("/admin/payments", headers=self.admin,
                                          json={**base, "external_reference": "MP-6", "device_id": 99})
        self.assertEqual(unknown_device.status_code, 400)

    def test_pending_listing(self):
        self.add_payment(ref="A")
        self.add_payment(ref="B", mac="001122334466", status="approved")
        self.add_payment(ref="C", mac="001122334477", status="completed")
        response = self.client.get("/admin/payments/pending", headers=self.admin)
        self.assertEqual(sorted(p["external_reference"] for p in response.json()), ["A", "B"])

    def test_reprocess(self):
        self.add_payment(ref="R-1")
        self.gateway.statuses["R-1"] = "approved"
        response = self.client.post("/admin/payments/R-1/reprocess", headers=self.admin)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["action"], "completed")

        again = self.client.post("/admin/payments/R-1/reprocess", headers=self.admin)
        self.assertEqual(again.json()["action"], "ignored_terminal")
        self.assertEqual(len(self.device.created), 1)

    def test_reprocess_unknown_payment(self):
        response = self.client.post("/admin/payments/NOPE/reprocess", headers=self.admin)
        self.assertEqual(response.status_code, 404)


class TestAdminPolling(ApiTestCase):

    def test_start_stop_and_stats(self):
        started = self.client.post("/admin/polling/start", headers=self.admin).json()
        self.assertEqual((started["success"], started["action"]), (True, "start"))
        self.assertFalse(self.client.post("/admin/polling/start", headers=self.admin).json()["success"])

        stats = self.client.get("/admin/polling/stats", headers=self.admin).json()
        self.assertTrue(stats["poller"]["is_running"])
        self.assertEqual(stats["poller"]["interval_seconds"], 60)

        stopped = self.client.post("/admin/polling/stop", headers=self.admin).json()
        self.assertTrue(stopped["success"])
        self.assertFalse(self.client.post("/admin/polling/stop", headers=self.admin).json()["success"])

    def test_check_now(self):
        self.add_payment(ref="P-1")
        self.add_payment(ref="P-2", mac="001122334466")
        self.gateway.statuses.update({"P-1": "approved", "P-2": "in_process"})

        response = self.client.post("/admin/polling/check-now", headers=self.admin)
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual((data["checked"], data["submitted"]), (2, 2))
        actions = {r["external_reference"]: r["action"] for r in data["results"]}
        self.assertEqual(actions, {"P-1": "completed", "P-2": "recorded"})


class TestAdminProvisioning(ApiTestCase):

    def test_failed_listing_and_retry(self):
        from provisioning_service.errors import ProvisioningUnavailable

        self.add_payment(ref="F-1")
        self.device.failures.append(ProvisioningUnavailable("router offline"))
        self.gateway.statuses["F-1"] = "approved"
        self.post_webhook("generic", {"external_reference": "F-1"})
        self.drain()

        failed = self.client.get("/admin/provisioning/failed", headers=self.admin).json()
        self.assertEqual([p["external_reference"] for p in failed], ["F-1"])
        self.assertEqual(failed[0]["provisioning_attempts"], 1)

        stats = self.client.get("/admin/provisioning/stats", headers=self.admin).json()
        self.assertEqual(stats["attempts"], {"failed": 1})
        self.assertEqual(stats["awaiting_retry"], 1)

        retried = self.client.post("/admin/provisioning/retry", headers=self.admin).json()
        self.assertEqual([r["action"] for r in retried["results"]], ["completed"])
        self.assertEqual(self.client.get("/admin/provisioning/failed", headers=self.admin).json(), [])
        stats = self.client.get("/admin/provisioning/stats", headers=self.admin).json()
        self.assertEqual(stats["attempts"], {"failed": 1, "success": 1})

    def test_flagged_listing(self):
        self.add_payment(ref="X-1", status="completed", needs_reconciliation=True,
                         reconciliation_note="balance update failed for owner-1")
        self.add_payment(ref="X-2", mac="001122334466", status="completed")
        flagged = self.client.get("/admin/reconciliation/flagged", headers=self.admin).json()
        self.assertEqual([p["external_reference"] for p in flagged], ["X-1"])
        self.assertTrue(flagged[0]["needs_reconciliation"])


if __name__ == "__main__":
    unittest.main()
