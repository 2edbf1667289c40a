import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient
from fakes import FakeInventoryStore, session_factory

from services.inventory.app import commands
from services.inventory.app import main
from services.inventory.app.latency import LatencyInjector


class TestInventoryAPI(unittest.TestCase):

    def setUp(self):
        self.store = FakeInventoryStore({"PROD-001": 10, "PROD-002": 1})
        self.latency = LatencyInjector(every_nth=3, delay_seconds=5)
        patchers = [
            patch.object(commands, "operations", self.store),
            patch.object(main, "operations", self.store),
            patch.object(main, "async_session", session_factory(self.store.session)),
            patch.object(main, "latency", self.latency),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.client = TestClient(main.app)

    def test_deduct(self):
        resp = self.client.post(
            "/internal/inventory/deduct",
            json={"order_id": "order-1", "product_id": "PROD-001", "quantity": 3},
            headers={"X-Request-ID": "req-1", "X-Correlation-ID": "corr-1"},
        )

        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["order_id"], "order-1")
        self.assertEqual(body["quantity_deducted"], 3)
        self.assertEqual(body["new_stock_level"], 7)
        self.assertIn("timestamp", body)

    def test_deduct_replay_returns_same_body(self):
        payload = {"order_id": "order-1", "product_id": "PROD-001", "quantity": 3}

        first = self.client.post("/internal/inventory/deduct", json=payload)
        second = self.client.post("/internal/inventory/deduct", json=payload)

        self.assertEqual(first.json(), second.json())
        self.assertEqual(self.store.stock("PROD-001"), 7)

    def test_insufficient_stock(self):
        resp = self.client.post(
            "/internal/inventory/deduct",
            json={"order_id": "C", "product_id": "PROD-002", "quantity": 5},
        )

        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"]["code"], "INSUFFICIENT_STOCK")
        self.assertEqual(self.store.deductions("C"), [])

    def test_unknown_product(self):
        resp = self.client.post(
            "/internal/inventory/deduct",
            json={"order_id": "order-1", "product_id": "NOPE", "quantity": 1},
        )

        self.assertEqual(resp.status_code, 404)
        self.assertEqual(
            resp.json(), {"error": {"code": "NOT_FOUND", "message": "Product not found"}}
        )

    def test_invalid_quantity(self):
        for quantity in (0, -1, None):
            with self.subTest(quantity=quantity):
                resp = self.client.post(
                    "/internal/inventory/deduct",
                    json={"order_id": "order-1", "product_id": "PROD-001", "quantity": quantity},
                )
                self.assertEqual(resp.status_code, 400)
                self.assertEqual(resp.json()["error"]["code"], "BAD_REQUEST")

    def test_non_integer_quantity(self):
        resp = self.client.post(
            "/internal/inventory/deduct",
            json={"order_id": "order-1", "product_id": "PROD-001", "quantity": "three"},
        )

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"]["code"], "BAD_REQUEST")

    def test_adjust_and_audit(self):
        resp = self.client.post(
            "/internal/inventory/adjust",
            json={"product_id": "PROD-002", "adjustment": 4, "reason": "restock"},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["new_stock"], 5)

        audit = self.client.get("/internal/inventory/audit", params={"product_id": "PROD-002"})

        self.assertEqual(audit.json()["count"], 1)
        self.assertEqual(audit.json()["logs"][0]["operation"], "adjust")

    def test_create_product(self):
        resp = self.client.post(
            "/internal/inventory/products",
            json={"product_id": "PROD-100", "name": "Lamp", "initial_stock": 2},
        )

        self.assertEqual(resp.status_code, 201)
        self.assertEqual(self.store.stock("PROD-100"), 2)

    def test_latency_endpoints(self):
        resp = self.client.post("/internal/latency/enable")
        self.assertTrue(resp.json()["enabled"])
        self.assertTrue(self.latency.enabled)

        status = self.client.get("/internal/latency/status").json()
        self.assertEqual(status["pattern"], "1 in every 3 requests delayed by 5s")

        resp = self.client.post("/internal/latency/disable")
        self.assertFalse(resp.json()["enabled"])

    def test_health(self):
        resp = self.client.get("/health")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "healthy")
        self.assertEqual(resp.json()["latency_mode"], "normal")


if __name__ == "__main__":
    unittest.main()
