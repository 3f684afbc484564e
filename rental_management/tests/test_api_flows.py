import os
import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fastapi.testclient import TestClient

os.environ.setdefault("RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from rental_management import RentalMan as app_module
from rental_management.tests.helpers import SETTINGS, new_session_factory


class ApiFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.factory = new_session_factory()

        def override_db():
            db = self.factory()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_rental_db] = override_db
        app_module.app.dependency_overrides[app_module.get_settings] = lambda: SETTINGS
        self.client = TestClient(app_module.app)

        self.start = (datetime.now() + timedelta(hours=2)).replace(minute=0, second=0, microsecond=0)
        self.end = self.start + timedelta(days=3)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()

    def _product(self, total=2, deposit="500"):
        response = self.client.post(
            "/api/products",
            json={
                "name": "Camera",
                "category": "electronics",
                "baseRate": "2000",
                "rateUnit": "day",
                "totalUnits": total,
                "securityDepositPerUnit": deposit,
            },
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["productID"]

    def _customer(self):
        response = self.client.post("/api/customers", json={"name": "Asha Rao", "segment": "Regular"})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["customerID"]

    def _booking(self, customer_id, product_id, quantity=1):
        response = self.client.post(
            "/api/bookings",
            json={
                "customerId": customer_id,
                "startDate": self.start.isoformat(),
                "endDate": self.end.isoformat(),
                "items": [{"productId": product_id, "quantity": quantity}],
            },
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_healthchecks(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_full_rental_flow(self):
        product_id = self._product()
        customer_id = self._customer()

        quote = self.client.post(
            "/api/quotes/preview",
            json={
                "customerId": customer_id,
                "startDate": self.start.isoformat(),
                "endDate": self.end.isoformat(),
                "items": [{"productId": product_id, "quantity": 1}],
            },
        )
        self.assertEqual(quote.status_code, 200, quote.text)
        self.assertEqual(quote.json()["finalAmount"], 7080.0)
        self.assertEqual(quote.json()["securityDeposit"], 500.0)
        self.assertTrue(quote.json()["isAvailable"])

        booking = self._booking(customer_id, product_id)
        self.assertEqual(booking["status"], "draft")
        booking_id = booking["bookingID"]

        confirmed = self.client.post(
            f"/api/bookings/{booking_id}/confirm",
            json={"expectedVersion": booking["version"]},
        )
        self.assertEqual(confirmed.status_code, 200, confirmed.text)
        body = confirmed.json()
        self.assertEqual(body["status"], "confirmed")
        self.assertEqual(
            [(row["label"], row["amount"]) for row in body["paymentDueSchedule"]],
            [("advance", 3540.0), ("balance", 3540.0), ("security deposit", 500.0)],
        )

        product = self.client.get(f"/api/products/{product_id}").json()
        self.assertEqual((product["reservedUnits"], product["availableUnits"]), (1, 1))

        paid = self.client.post(f"/api/bookings/{booking_id}/payments", json={"amount": "3540", "method": "card"})
        self.assertEqual(paid.status_code, 200, paid.text)
        self.assertEqual(paid.json()["paymentStatus"], "partial")

        too_much = self.client.post(f"/api/bookings/{booking_id}/payments", json={"amount": "10000"})
        self.assertEqual(too_much.status_code, 400)
        self.assertEqual(too_much.json()["detail"]["error"], "overpayment_not_allowed")

        started = self.client.post(f"/api/bookings/{booking_id}/start")
        self.assertEqual(started.status_code, 200, started.text)
        self.assertEqual(started.json()["status"], "in_progress")

        returned = self.client.post(
            f"/api/bookings/{booking_id}/return",
            json={"returnedAt": self.end.isoformat(), "items": [{"productID": product_id, "condition": "good"}]},
        )
        self.assertEqual(returned.status_code, 200, returned.text)
        self.assertIsNone(returned.json()["returnCase"])
        self.assertEqual(returned.json()["booking"]["status"], "completed")

        product = self.client.get(f"/api/products/{product_id}").json()
        self.assertEqual((product["reservedUnits"], product["availableUnits"]), (0, 2))

        timeline = self.client.get(f"/api/bookings/{booking_id}/timeline").json()
        self.assertEqual(
            [event["type"] for event in timeline],
            ["created", "confirmed", "started", "returned", "completed"],
        )

        pending = self.client.get("/api/notifications/pending").json()
        self.assertEqual(len(pending), 5)
        ack = self.client.post(f"/api/notifications/{pending[0]['eventID']}/ack")
        self.assertIsNotNone(ack.json()["dispatchedAt"])
        self.assertEqual(len(self.client.get("/api/notifications/pending").json()), 4)

    def test_confirm_conflict_maps_to_409(self):
        product_id = self._product(total=1)
        customer_id = self._customer()
        first = self._booking(customer_id, product_id)
        second = self._booking(customer_id, product_id)

        self.assertEqual(self.client.post(f"/api/bookings/{first['bookingID']}/confirm").status_code, 200)
        rejected = self.client.post(f"/api/bookings/{second['bookingID']}/confirm")
        self.assertEqual(rejected.status_code, 409)
        detail = rejected.json()["detail"]
        self.assertEqual(detail["error"], "insufficient_inventory")
        self.assertEqual(detail["context"]["available"], 0)
        self.assertEqual(self.client.get(f"/api/bookings/{second['bookingID']}").json()["status"], "draft")

    def test_stale_version_is_retryable_conflict(self):
        product_id = self._product()
        booking = self._booking(self._customer(), product_id)
        response = self.client.post(
            f"/api/bookings/{booking['bookingID']}/cancel",
            json={"reason": "changed plans", "expectedVersion": booking["version"] + 5},
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"]["error"], "concurrency_conflict")
        self.assertTrue(response.json()["detail"]["retryable"])

    def test_cancel_then_confirm_is_invalid_transition(self):
        booking = self._booking(self._customer(), self._product())
        cancelled = self.client.post(f"/api/bookings/{booking['bookingID']}/cancel", json={"reason": "changed plans"})
        self.assertEqual(cancelled.json()["status"], "cancelled")
        response = self.client.post(f"/api/bookings/{booking['bookingID']}/confirm")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"]["error"], "invalid_transition")

    def test_bad_requests(self):
        product_id = self._product()
        customer_id = self._customer()

        reversed_window = self.client.post(
            "/api/bookings",
            json={
                "customerId": customer_id,
                "startDate": self.end.isoformat(),
                "endDate": self.start.isoformat(),
                "items": [{"productId": product_id, "quantity": 1}],
            },
        )
        self.assertEqual(reversed_window.status_code, 400)
        self.assertEqual(reversed_window.json()["detail"]["error"], "invalid_duration")

        weekly = self.client.post(
            "/api/quotes/preview",
            json={
                "startDate": self.start.isoformat(),
                "endDate": self.end.isoformat(),
                "items": [{"productId": product_id, "quantity": 1, "rateUnit": "week"}],
            },
        )
        self.assertEqual(weekly.status_code, 400)
        self.assertEqual(weekly.json()["detail"]["error"], "no_applicable_rate")

        zero = self.client.post(
            "/api/reservations",
            json={
                "productID": product_id,
                "startDate": self.start.isoformat(),
                "endDate": self.end.isoformat(),
                "quantity": 0,
            },
        )
        self.assertEqual(zero.status_code, 422)

        self.assertEqual(self.client.get("/api/bookings/999").status_code, 404)
        self.assertEqual(self.client.get("/api/return-cases/999").status_code, 404)

    def test_reservation_and_maintenance_endpoints(self):
        product_id = self._product(total=3)
        reservation = self.client.post(
            "/api/reservations",
            json={
                "productID": product_id,
                "startDate": self.start.isoformat(),
                "endDate": self.end.isoformat(),
                "quantity": 2,
            },
        )
        self.assertEqual(reservation.status_code, 200, reservation.text)

        blocked = self.client.post(f"/api/products/{product_id}/maintenance", json={"quantity": 2})
        self.assertEqual(blocked.status_code, 400)
        self.assertEqual(blocked.json()["detail"]["error"], "invalid_quantity")

        moved = self.client.post(f"/api/products/{product_id}/maintenance", json={"quantity": 1, "notes": "lens"})
        self.assertEqual(moved.status_code, 200, moved.text)
        self.assertEqual((moved.json()["availableUnits"], moved.json()["maintenanceUnits"]), (0, 1))

        availability = self.client.get(
            f"/api/products/{product_id}/availability",
            params={"startDate": self.start.isoformat(), "endDate": self.end.isoformat(), "quantity": 1},
        ).json()
        self.assertFalse(availability["available"])

        released = self.client.post(f"/api/reservations/{reservation.json()['reservationID']}/release")
        self.assertEqual(released.json()["status"], "released")
        product = self.client.get(f"/api/products/{product_id}").json()
        self.assertEqual((product["availableUnits"], product["reservedUnits"]), (2, 0))

    def test_zone_aware_timestamps_are_stored_as_local_time(self):
        product_id = self._product(total=3)

        def reserve(start, end, quantity):
            return self.client.post(
                "/api/reservations",
                json={"productID": product_id, "startDate": start, "endDate": end, "quantity": quantity},
            )

        first = reserve("2030-08-01T00:00:00Z", "2030-08-03T00:00:00Z", 3)
        self.assertEqual(first.status_code, 200, first.text)
        expected_start = datetime(2030, 8, 1, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)
        self.assertEqual(first.json()["startAt"], expected_start.isoformat())

        overlapping = reserve("2030-08-02T00:00:00Z", "2030-08-04T00:00:00Z", 1)
        self.assertEqual(overlapping.status_code, 409, overlapping.text)
        self.assertEqual(overlapping.json()["detail"]["error"], "insufficient_inventory")

        # same instant as the first end, written with an offset
        adjacent = reserve("2030-08-03T05:30:00+05:30", "2030-08-04T00:00:00Z", 3)
        self.assertEqual(adjacent.status_code, 200, adjacent.text)

        availability = self.client.get(
            f"/api/products/{product_id}/availability",
            params={"startDate": "2030-08-02T00:00:00Z", "endDate": "2030-08-02T12:00:00Z", "quantity": 1},
        )
        self.assertEqual(availability.status_code, 200, availability.text)
        self.assertFalse(availability.json()["available"])

        booking = self.client.post(
            "/api/bookings",
            json={
                "customerId": self._customer(),
                "startDate": "2030-09-01T00:00:00Z",
                "endDate": "2030-09-04T00:00:00Z",
                "items": [{"productId": product_id, "quantity": 1}],
            },
        )
        self.assertEqual(booking.status_code, 200, booking.text)
        self.assertEqual(booking.json()["status"], "draft")
        self.assertEqual(booking.json()["subtotal"], 6000.0)

        booking_id = booking.json()["bookingID"]
        self.assertEqual(self.client.post(f"/api/bookings/{booking_id}/confirm").status_code, 200)
        extended = self.client.post(
            f"/api/bookings/{booking_id}/extend",
            json={"newEndDate": "2030-09-05T00:00:00Z"},
        )
        self.assertEqual(extended.status_code, 200, extended.text)
        self.assertEqual(extended.json()["subtotal"], 8000.0)

    def test_refund_outcomes_are_recorded_and_only_successes_applied(self):
        product_id = self._product()
        booking = self._booking(self._customer(), product_id)
        booking_id = booking["bookingID"]
        self.assertEqual(self.client.post(f"/api/bookings/{booking_id}/confirm").status_code, 200)

        paid = self.client.post(
            f"/api/bookings/{booking_id}/payments",
            json={"amount": "8000", "method": "card", "advanceCredit": True},
        )
        self.assertEqual(paid.status_code, 200, paid.text)
        self.assertEqual(paid.json()["creditBalance"], 420.0)

        failed = self.client.post(
            f"/api/bookings/{booking_id}/refunds",
            json={"amount": "300", "transactionId": "rf_1", "status": "failed"},
        )
        self.assertEqual(failed.status_code, 200, failed.text)
        self.assertEqual(failed.json()["creditBalance"], 420.0)
        refund = failed.json()["transactions"][-1]
        self.assertEqual((refund["kind"], refund["gatewayStatus"], refund["appliedAmount"]), ("refund", "failed", 0.0))

        succeeded = self.client.post(
            f"/api/bookings/{booking_id}/refunds",
            json={"amount": "300", "transactionId": "rf_2"},
        )
        self.assertEqual(succeeded.json()["creditBalance"], 120.0)
        self.assertEqual(len(succeeded.json()["transactions"]), 3)

        rejected = self.client.post(f"/api/bookings/{booking_id}/refunds", json={"amount": "0"})
        self.assertEqual(rejected.status_code, 422)

    def test_explicit_duration_overrides_window(self):
        product_id = self._product()
        quote = self.client.post(
            "/api/quotes/preview",
            json={
                "startDate": self.start.isoformat(),
                "endDate": self.end.isoformat(),
                "items": [{"productId": product_id, "quantity": 1, "duration": "1", "durationUnit": "week"}],
            },
        )
        self.assertEqual(quote.status_code, 200, quote.text)
        self.assertEqual(quote.json()["subtotal"], 14000.0)

        booking = self.client.post(
            "/api/bookings",
            json={
                "customerId": self._customer(),
                "startDate": self.start.isoformat(),
                "endDate": self.end.isoformat(),
                "items": [{"productId": product_id, "quantity": 1, "duration": "36", "durationUnit": "hour"}],
            },
        )
        self.assertEqual(booking.status_code, 200, booking.text)
        self.assertEqual(booking.json()["items"][0]["duration"], 2)
        self.assertEqual(booking.json()["subtotal"], 4000.0)

    def test_delivery_legs_follow_the_booking(self):
        product_id = self._product()
        response = self.client.post(
            "/api/bookings",
            json={
                "customerId": self._customer(),
                "startDate": self.start.isoformat(),
                "endDate": self.end.isoformat(),
                "items": [{"productId": product_id, "quantity": 1}],
                "deliveryRequired": True,
                "pickupRequired": True,
                "deliveryAddress": "12 MG Road, Pune",
            },
        )
        self.assertEqual(response.status_code, 200, response.text)
        booking_id = response.json()["bookingID"]
        self.assertEqual(self.client.get(f"/api/bookings/{booking_id}/deliveries").json(), [])

        self.assertEqual(self.client.post(f"/api/bookings/{booking_id}/confirm").status_code, 200)
        legs = self.client.get(f"/api/bookings/{booking_id}/deliveries").json()
        self.assertEqual([(leg["deliveryType"], leg["status"]) for leg in legs], [("delivery", "scheduled"), ("return_pickup", "scheduled")])
        self.assertEqual(legs[0]["scheduledAt"], self.start.isoformat())
        self.assertEqual(legs[1]["scheduledAt"], self.end.isoformat())
        self.assertEqual(legs[0]["address"], "12 MG Road, Pune")
        outbound_id, return_id = legs[0]["deliveryID"], legs[1]["deliveryID"]

        dispatched = self.client.post(f"/api/deliveries/{outbound_id}/status", json={"status": "in_transit", "vehicleNumber": "MH12AB1234"})
        self.assertEqual(dispatched.status_code, 200, dispatched.text)
        self.assertEqual(dispatched.json()["vehicleNumber"], "MH12AB1234")
        scheduled = self.client.get("/api/deliveries", params={"status": "scheduled"}).json()
        self.assertEqual([leg["deliveryID"] for leg in scheduled], [return_id])

        self.assertEqual(self.client.post(f"/api/bookings/{booking_id}/start").status_code, 200)
        outbound = self.client.get(f"/api/bookings/{booking_id}/deliveries").json()[0]
        self.assertEqual(outbound["status"], "delivered")
        self.assertIsNotNone(outbound["actualAt"])

        new_end = self.end + timedelta(days=1)
        extended = self.client.post(f"/api/bookings/{booking_id}/extend", json={"newEndDate": new_end.isoformat()})
        self.assertEqual(extended.status_code, 200, extended.text)
        self.assertEqual(self.client.get(f"/api/bookings/{booking_id}/deliveries").json()[1]["scheduledAt"], new_end.isoformat())

        returned = self.client.post(f"/api/bookings/{booking_id}/return", json={"returnedAt": new_end.isoformat()})
        self.assertEqual(returned.status_code, 200, returned.text)
        pickup = self.client.get(f"/api/bookings/{booking_id}/deliveries").json()[1]
        self.assertEqual((pickup["status"], pickup["actualAt"]), ("delivered", new_end.isoformat()))

        invalid = self.client.post(f"/api/deliveries/{outbound_id}/status", json={"status": "failed"})
        self.assertEqual(invalid.status_code, 409)
        self.assertEqual(invalid.json()["detail"]["error"], "invalid_transition")
        self.assertEqual(self.client.post("/api/deliveries/999/status", json={"status": "failed"}).status_code, 404)

        timeline = [event["type"] for event in self.client.get(f"/api/bookings/{booking_id}/timeline").json()]
        self.assertIn("delivery_in_transit", timeline)


if __name__ == "__main__":
    unittest.main()
