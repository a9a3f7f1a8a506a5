import unittest
from datetime import timedelta
from unittest import mock

from fastapi.testclient import TestClient

from lending_fixtures import TODAY, LendingTestCase

import LabLending as app_module


class LendingApiTests(LendingTestCase):
    def setUp(self):
        super().setUp()

        def override_db():
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_lending_db] = override_db
        app_module.app.dependency_overrides[app_module.get_clock] = lambda: self.clock
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        super().tearDown()

    def _post_item(self, total=10, cap=None, name="Beaker 250ml", category="Chemistry"):
        payload = {"itemName": name, "category": category, "totalQuantity": total}
        if cap is not None:
            payload["borrowCap"] = cap
        response = self.client.post("/api/items", json=payload)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def _post_loan(self, item_id, quantity=1, due=None, borrower="Ada", **extra):
        payload = {
            "itemID": item_id,
            "quantity": quantity,
            "dueOn": (due or TODAY + timedelta(days=7)).isoformat(),
            "borrowerName": borrower,
            **extra,
        }
        return self.client.post("/api/loans", json=payload)

    def test_health(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_lifespan_starts_and_stops_sweeper(self):
        with mock.patch.object(app_module, "_SWEEPER") as sweeper:
            with TestClient(app_module.app) as client:
                self.assertEqual(client.get("/healthz").status_code, 200)
                sweeper.start.assert_called_once_with()
                sweeper.stop.assert_not_called()
            sweeper.stop.assert_called_once_with()

    def test_item_create_generates_code_and_summary(self):
        item = self._post_item(total=10, cap=6)

        self.assertRegex(item["shortCode"], r"^CHE-\d{4}$")
        self.assertEqual(item["available"], 6)
        self.assertEqual(item["sealedQuantity"], 4)

        summary = self.client.get("/api/items/summary").json()
        self.assertEqual(summary["itemCount"], 1)
        self.assertEqual(summary["available"], 6)
        self.assertEqual(summary["lowStock"], [])

    def test_invalid_item_is_rejected(self):
        response = self.client.post("/api/items", json={"itemName": "Flask", "totalQuantity": 3, "borrowCap": 5})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"]["code"], "validation_error")

    def test_loan_flow_and_idempotent_return(self):
        item = self._post_item(total=10, cap=6)

        created = self._post_loan(item["itemID"], quantity=2)
        self.assertEqual(created.status_code, 200, created.text)
        loan = created.json()
        self.assertEqual(loan["status"], "Borrowed")
        self.assertEqual(self.client.get(f"/api/items/{item['itemID']}").json()["available"], 4)

        bad = self.client.post(
            f"/api/loans/{loan['loanID']}/return",
            json={"disposition": {"good": 1, "defective": 0, "disposed": 0}},
        )
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.json()["detail"]["code"], "validation_error")

        returned = self.client.post(
            f"/api/loans/{loan['loanID']}/return",
            json={"disposition": {"good": 1, "defective": 1, "disposed": 0}},
        )
        self.assertEqual(returned.status_code, 200)
        self.assertTrue(returned.json()["changed"])
        self.assertEqual(returned.json()["loan"]["disposition"], {"good": 1, "defective": 1, "disposed": 0})

        again = self.client.post(f"/api/loans/{loan['loanID']}/return")
        self.assertEqual(again.status_code, 200)
        self.assertFalse(again.json()["changed"])

        detail = self.client.get(f"/api/items/{item['itemID']}").json()
        self.assertEqual((detail["inUseQuantity"], detail["totalQuantity"]), (0, 9))

    def test_insufficient_stock_is_conflict(self):
        item = self._post_item(total=3)
        self.assertEqual(self._post_loan(item["itemID"], quantity=3).status_code, 200)

        response = self._post_loan(item["itemID"], quantity=1)

        self.assertEqual(response.status_code, 409)
        detail = response.json()["detail"]
        self.assertEqual(detail["code"], "insufficient_stock")
        self.assertEqual(detail["context"]["available"], 0)

    def test_unknown_loan_is_not_found(self):
        self.assertEqual(self.client.post("/api/loans/999/return").status_code, 404)
        self.assertEqual(self.client.delete("/api/loans/999").status_code, 404)

    def test_loan_listing_filters(self):
        item = self._post_item(total=10, name="Burette")
        self._post_loan(item["itemID"], due=TODAY + timedelta(days=1), borrower="Ada Lovelace")
        self._post_loan(item["itemID"], due=TODAY + timedelta(days=20), borrower="Grace Hopper")
        self.clock.advance(days=3)

        overdue = self.client.get("/api/loans", params={"status": "Overdue"}).json()
        self.assertEqual([loan["borrowerName"] for loan in overdue], ["Ada Lovelace"])
        self.assertTrue(overdue[0]["isPastDue"])
        found = self.client.get("/api/loans", params={"q": "hopper"}).json()
        self.assertEqual([loan["borrowerName"] for loan in found], ["Grace Hopper"])
        self.assertEqual(self.client.get("/api/loans", params={"status": "Lost"}).status_code, 400)

    def test_bulk_return_reports_each_id(self):
        item = self._post_item(total=10)
        first = self._post_loan(item["itemID"]).json()
        second = self._post_loan(item["itemID"]).json()
        self.client.post(f"/api/loans/{second['loanID']}/return")

        response = self.client.post("/api/loans/bulk-return", json={"ids": [first["loanID"], second["loanID"], 999]})

        outcomes = [entry["outcome"] for entry in response.json()["results"]]
        self.assertEqual(outcomes, ["ok", "already_returned", "failed"])

    def test_request_flow(self):
        flask = self._post_item(total=5, name="Flask")
        burner = self._post_item(total=2, name="Bunsen Burner", category="Physics")
        payload = {
            "borrowerName": "Ada Lovelace",
            "desiredReturnOn": (TODAY + timedelta(days=10)).isoformat(),
            "lines": [{"itemID": flask["itemID"], "quantity": 2}, {"itemID": burner["itemID"], "quantity": 1}],
        }
        created = self.client.post("/api/requests", json=payload)
        self.assertEqual(created.status_code, 200, created.text)
        request = created.json()
        self.assertEqual(request["status"], "Pending")

        by_code = self.client.get(f"/api/requests/by-reference/{request['referenceCode'].lower()}")
        self.assertEqual(by_code.json()["requestID"], request["requestID"])

        approved = self.client.post(f"/api/requests/{request['requestID']}/approve")
        self.assertEqual(approved.status_code, 200, approved.text)
        body = approved.json()
        self.assertTrue(body["approved"])
        self.assertEqual(body["request"]["status"], "Approved")
        self.assertEqual(len(body["createdLoanIDs"]), 2)

        released = self.client.post(f"/api/requests/{request['requestID']}/release")
        self.assertEqual(released.json()["status"], "Released")

        self.client.post("/api/loans/bulk-return", json={"ids": body["createdLoanIDs"]})
        final = self.client.get(f"/api/requests/{request['requestID']}").json()
        self.assertEqual(final["status"], "Returned")

        types = [entry["type"] for entry in self.client.get("/api/notifications/pending").json()]
        self.assertEqual(types, ["RequestSubmitted", "RequestApproved", "RequestReturned"])

    def test_request_preflight_failure_is_conflict(self):
        burner = self._post_item(total=2, name="Bunsen Burner")
        payload = {
            "borrowerName": "Ada",
            "desiredReturnOn": (TODAY + timedelta(days=10)).isoformat(),
            "lines": [{"itemID": burner["itemID"], "quantity": 3}],
        }
        request = self.client.post("/api/requests", json=payload).json()

        response = self.client.post(f"/api/requests/{request['requestID']}/approve")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"]["code"], "insufficient_stock")
        self.assertEqual(self.client.get(f"/api/requests/{request['requestID']}").json()["status"], "Pending")

    def test_delete_request_removes_linked_loans(self):
        flask = self._post_item(total=5, name="Flask")
        payload = {
            "borrowerName": "Ada",
            "desiredReturnOn": (TODAY + timedelta(days=10)).isoformat(),
            "lines": [{"itemID": flask["itemID"], "quantity": 2}],
        }
        request = self.client.post("/api/requests", json=payload).json()
        self.client.post(f"/api/requests/{request['requestID']}/approve")

        deleted = self.client.delete(f"/api/requests/{request['requestID']}")

        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(self.client.get(f"/api/requests/{request['requestID']}").status_code, 404)
        self.assertEqual(self.client.get(f"/api/items/{flask['itemID']}").json()["inUseQuantity"], 0)
        self.assertEqual(self.client.get("/api/loans").json(), [])

    def test_overdue_sweep_endpoint(self):
        item = self._post_item(total=5)
        self._post_loan(item["itemID"], due=TODAY + timedelta(days=1))
        self.clock.advance(days=2)

        result = self.client.post("/api/maintenance/overdue-sweep").json()

        self.assertEqual((result["scanned"], result["updated"]), (1, 1))
        loans = self.client.get("/api/loans", params={"status": "Overdue"}).json()
        self.assertEqual(loans[0]["status"], "Overdue")

    def test_scan_resolves_unit_codes(self):
        item = self._post_item(total=3)
        unit_code = f"{item['shortCode']}-002"

        available = self.client.get("/api/scan", params={"code": unit_code.lower()}).json()
        self.assertEqual(available["status"], "available")
        self.assertTrue(available["canBorrow"])

        self._post_loan(item["itemID"], specificUnitCode=unit_code)
        on_loan = self.client.get("/api/scan", params={"code": unit_code}).json()
        self.assertEqual(on_loan["status"], "on_loan")
        self.assertEqual(on_loan["activeLoan"]["specificUnitCode"], unit_code)

        audit = self.client.post(f"/api/items/{item['itemID']}/audit", json={"scannedCodes": [f"{item['shortCode']}-001"]})
        self.assertEqual(audit.json()["stats"]["borrowed"], 1)

    def test_item_lookup_by_code_and_audit_trail(self):
        item = self._post_item(total=2)

        found = self.client.get(f"/api/items/by-code/{item['shortCode'].lower()}")
        self.assertEqual(found.json()["itemID"], item["itemID"])
        self.assertEqual(self.client.get("/api/items/by-code/NOPE-0000").status_code, 404)

        loan = self._post_loan(item["itemID"]).json()
        self.client.post(f"/api/loans/{loan['loanID']}/return")
        actions = [entry["action"] for entry in self.client.get(f"/api/audit/LoanRecord/{loan['loanID']}").json()]
        self.assertEqual(actions, ["Created", "Returned"])


if __name__ == "__main__":
    unittest.main()
