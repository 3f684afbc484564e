import sys
import unittest
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from sqlalchemy import select

from rental_management.errors import ConcurrencyConflict, InsufficientInventory, InvalidDuration, InvalidTransition, NotFound
from rental_management.models.rental_models import InventoryReservation
from rental_management.services import booking_service, delivery_service, inventory_service, payment_service, timeline_service
from rental_management.tests.helpers import SETTINGS, add_customer, add_product, new_session_factory

NOW = datetime(2025, 8, 1, 9, 0)
START = datetime(2025, 8, 10, 10, 0)
END = datetime(2025, 8, 13, 10, 0)


class BookingLifecycleTests(unittest.TestCase):
    def setUp(self):
        self.engine, factory = new_session_factory()
        self.db = factory()
        self.customer = add_customer(self.db)
        self.camera = add_product(self.db, name="Camera", total=5, rate="2000")

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _create(self, items=None, start=START, end=END):
        return booking_service.create_booking(
            self.db,
            self.customer.CustomerID,
            start,
            end,
            items or [{"productID": self.camera.ProductID, "quantity": 1}],
            SETTINGS,
            now=NOW,
        )

    def _confirmed(self, **kwargs):
        booking = self._create(**kwargs)
        return booking_service.confirm_booking(self.db, booking.BookingID, SETTINGS, now=NOW)

    def _reserved(self, product_id):
        return inventory_service.get_product(self.db, product_id, for_update=True).ReservedUnits

    def _active_reservations(self, booking_id):
        return self.db.execute(
            select(InventoryReservation)
            .where(InventoryReservation.BookingID == booking_id)
            .where(InventoryReservation.Status == inventory_service.RESERVATION_ACTIVE)
        ).scalars().all()

    def test_draft_is_priced_but_holds_no_inventory(self):
        booking = self._create()
        self.assertEqual(booking.Status, booking_service.DRAFT)
        self.assertEqual(booking.BookingNumber, "BK-2508-0001")
        self.assertEqual(booking.Subtotal, Decimal("6000.00"))
        self.assertEqual(booking.FinalAmount, Decimal("7080.00"))
        self.assertEqual(self._reserved(self.camera.ProductID), 0)
        self.assertEqual(self._create().BookingNumber, "BK-2508-0002")

        events = timeline_service.booking_timeline(self.db, booking.BookingID)
        self.assertEqual([e.EventType for e in events], ["created"])

    def test_confirm_reserves_inventory_and_builds_due_schedule(self):
        booking = self._create(items=[{"productID": self.camera.ProductID, "quantity": 2}])
        version = booking.Version
        booking = booking_service.confirm_booking(self.db, booking.BookingID, SETTINGS, expected_version=version, now=NOW)

        self.assertEqual(booking.Status, booking_service.CONFIRMED)
        self.assertGreater(booking.Version, version)
        self.assertEqual(self._reserved(self.camera.ProductID), 2)

        record = payment_service.get_payment_record(self.db, booking.BookingID, create=False)
        confirmation = booking_service.build_confirmation(booking, record, NOW)
        schedule = [(row["label"], row["amount"], row["dueDate"]) for row in confirmation["paymentDueSchedule"]]
        self.assertEqual(
            schedule,
            [("advance", Decimal("7080.00"), NOW), ("balance", Decimal("7080.00"), START)],
        )
        self.assertEqual(confirmation["finalAmount"], Decimal("14160.00"))

    def test_confirm_twice_is_an_invalid_transition(self):
        booking = self._confirmed()
        with self.assertRaises(InvalidTransition):
            booking_service.confirm_booking(self.db, booking.BookingID, SETTINGS, now=NOW)
        self.assertEqual(self._reserved(self.camera.ProductID), 1)

    def test_stale_version_is_rejected(self):
        booking = self._create()
        with self.assertRaises(ConcurrencyConflict):
            booking_service.confirm_booking(self.db, booking.BookingID, SETTINGS, expected_version=99, now=NOW)
        self.assertEqual(booking_service.load_booking(self.db, booking.BookingID).Status, booking_service.DRAFT)

    def test_confirm_is_all_or_nothing_across_items(self):
        tripod = add_product(self.db, name="Tripod", total=1, rate="300")
        inventory_service.reserve(self.db, tripod.ProductID, START, END, 1)
        booking = self._create(
            items=[
                {"productID": self.camera.ProductID, "quantity": 2},
                {"productID": tripod.ProductID, "quantity": 1},
            ]
        )

        with self.assertRaises(InsufficientInventory):
            booking_service.confirm_booking(self.db, booking.BookingID, SETTINGS, now=NOW)

        self.assertEqual(booking_service.load_booking(self.db, booking.BookingID).Status, booking_service.DRAFT)
        self.assertEqual(self._reserved(self.camera.ProductID), 0)
        self.assertEqual(self._active_reservations(booking.BookingID), [])
        self.assertIsNone(payment_service.get_payment_record(self.db, booking.BookingID, create=False))

    def test_competing_confirmations_cannot_overbook(self):
        drone = add_product(self.db, name="Drone", total=1, rate="5000")
        first = self._create(items=[{"productID": drone.ProductID, "quantity": 1}])
        second = self._create(
            items=[{"productID": drone.ProductID, "quantity": 1}],
            start=START + timedelta(days=1),
            end=END + timedelta(days=1),
        )
        booking_service.confirm_booking(self.db, first.BookingID, SETTINGS, now=NOW)
        with self.assertRaises(InsufficientInventory):
            booking_service.confirm_booking(self.db, second.BookingID, SETTINGS, now=NOW)
        self.assertEqual(self._reserved(drone.ProductID), 1)

    def test_cancel_confirmed_booking_releases_inventory_and_voids_schedule(self):
        booking = self._confirmed()
        booking = booking_service.cancel_booking(self.db, booking.BookingID, reason="customer request", now=NOW)

        self.assertEqual(booking.Status, booking_service.CANCELLED)
        self.assertEqual(booking.CancellationReason, "customer request")
        self.assertEqual(self._reserved(self.camera.ProductID), 0)
        record = payment_service.get_payment_record(self.db, booking.BookingID, create=False)
        self.assertEqual(payment_service.ledger_totals(record)[0], Decimal("0.00"))

        with self.assertRaises(InvalidTransition):
            booking_service.confirm_booking(self.db, booking.BookingID, SETTINGS, now=NOW)

    def test_start_respects_lead_window(self):
        booking = self._confirmed()
        with self.assertRaises(InvalidTransition):
            booking_service.start_booking(self.db, booking.BookingID, SETTINGS, now=START - timedelta(days=2))

        started_at = START - timedelta(hours=20)
        booking = booking_service.start_booking(self.db, booking.BookingID, SETTINGS, now=started_at)
        self.assertEqual(booking.Status, booking_service.IN_PROGRESS)
        self.assertEqual(booking.ActualStart, started_at)

    def test_in_progress_booking_cannot_be_cancelled_or_restarted(self):
        booking = self._confirmed()
        booking_service.start_booking(self.db, booking.BookingID, SETTINGS, now=START)
        with self.assertRaises(InvalidTransition):
            booking_service.cancel_booking(self.db, booking.BookingID, now=START)
        with self.assertRaises(InvalidTransition):
            booking_service.start_booking(self.db, booking.BookingID, SETTINGS, now=START)
        with self.assertRaises(InvalidTransition):
            booking_service.complete_booking(self.db, booking.BookingID, SETTINGS, now=START)

    def test_draft_cannot_start(self):
        booking = self._create()
        with self.assertRaises(InvalidTransition):
            booking_service.start_booking(self.db, booking.BookingID, SETTINGS, now=START)

    def test_overdue_is_derived_from_end_date(self):
        booking = self._confirmed()
        booking_service.start_booking(self.db, booking.BookingID, SETTINGS, now=START)
        late = END + timedelta(hours=1)

        self.assertEqual(booking_service.effective_status(booking, END - timedelta(hours=1)), booking_service.IN_PROGRESS)
        self.assertEqual(booking_service.effective_status(booking, late), booking_service.OVERDUE)
        self.assertEqual(booking.Status, booking_service.IN_PROGRESS)

        overdue = booking_service.list_bookings(self.db, status=booking_service.OVERDUE, now=late)
        self.assertEqual([b.BookingID for b in overdue], [booking.BookingID])
        summary = booking_service.booking_summary(self.db, now=late)
        self.assertEqual(summary["byStatus"]["overdue"], 1)

    def test_extend_reprices_and_charges_the_difference(self):
        booking = self._confirmed()
        new_end = END + timedelta(days=2)
        booking = booking_service.extend_booking(self.db, booking.BookingID, new_end, SETTINGS, now=NOW)

        self.assertEqual(booking.EndAt, new_end)
        self.assertEqual(booking.FinalAmount, Decimal("11800.00"))
        reservations = self._active_reservations(booking.BookingID)
        self.assertEqual([(r.StartAt, r.EndAt) for r in reservations], [(START, new_end)])

        record = payment_service.get_payment_record(self.db, booking.BookingID, create=False)
        extension = [i for i in record.Installments if i.Label == "extension"]
        self.assertEqual([i.Amount for i in extension], [Decimal("4720.00")])

    def test_extend_into_another_booking_is_rolled_back(self):
        drone = add_product(self.db, name="Drone", total=1, rate="5000")
        first = self._confirmed(items=[{"productID": drone.ProductID, "quantity": 1}])
        self._confirmed(
            items=[{"productID": drone.ProductID, "quantity": 1}],
            start=END + timedelta(days=1),
            end=END + timedelta(days=3),
        )

        with self.assertRaises(InsufficientInventory):
            booking_service.extend_booking(self.db, first.BookingID, END + timedelta(days=2), SETTINGS, now=NOW)

        booking = booking_service.load_booking(self.db, first.BookingID)
        self.assertEqual(booking.EndAt, END)
        self.assertEqual(len(self._active_reservations(first.BookingID)), 1)

    def test_update_items_reprices_a_draft(self):
        booking = self._create()
        booking = booking_service.update_items(
            self.db,
            booking.BookingID,
            [{"productID": self.camera.ProductID, "quantity": 3}],
            SETTINGS,
            expected_version=booking.Version,
            now=NOW,
        )
        self.assertEqual([item.Quantity for item in booking.Items], [3])
        self.assertEqual(booking.Subtotal, Decimal("18000.00"))
        self.assertEqual(self._reserved(self.camera.ProductID), 0)

    def test_update_items_on_confirmed_booking_moves_reservations(self):
        booking = self._confirmed()
        booking = booking_service.update_items(
            self.db,
            booking.BookingID,
            [{"productID": self.camera.ProductID, "quantity": 4}],
            SETTINGS,
            now=NOW,
        )
        self.assertEqual(self._reserved(self.camera.ProductID), 4)
        record = payment_service.get_payment_record(self.db, booking.BookingID, create=False)
        adjustment = [i for i in record.Installments if i.Label == "adjustment"]
        self.assertEqual([i.Amount for i in adjustment], [Decimal("21240.00")])

    def test_cancel_calls_off_scheduled_deliveries(self):
        booking = booking_service.create_booking(
            self.db,
            self.customer.CustomerID,
            START,
            END,
            [{"productID": self.camera.ProductID, "quantity": 1}],
            SETTINGS,
            delivery_required=True,
            pickup_required=True,
            delivery_address="4 Lake View, Pune",
            now=NOW,
        )
        booking_service.confirm_booking(self.db, booking.BookingID, SETTINGS, now=NOW)
        legs = delivery_service.booking_deliveries(self.db, booking.BookingID)
        self.assertEqual(
            [(leg.DeliveryType, leg.ScheduledAt, leg.ContactPerson) for leg in legs],
            [("delivery", START, "Asha Rao"), ("return_pickup", END, "Asha Rao")],
        )

        failed = delivery_service.update_status(self.db, legs[0].DeliveryID, delivery_service.FAILED, now=NOW)
        self.assertEqual(failed.Status, delivery_service.FAILED)
        with self.assertRaises(InvalidDuration):
            delivery_service.update_status(self.db, legs[0].DeliveryID, delivery_service.SCHEDULED, now=NOW)
        retry_at = START + timedelta(hours=3)
        rescheduled = delivery_service.update_status(
            self.db, legs[0].DeliveryID, delivery_service.SCHEDULED, scheduled_at=retry_at, now=NOW
        )
        self.assertEqual((rescheduled.Status, rescheduled.ScheduledAt), (delivery_service.SCHEDULED, retry_at))

        booking_service.cancel_booking(self.db, booking.BookingID, "event called off", now=NOW)
        statuses = [leg.Status for leg in delivery_service.booking_deliveries(self.db, booking.BookingID)]
        self.assertEqual(statuses, [delivery_service.CANCELLED, delivery_service.CANCELLED])
        events = [e.EventType for e in timeline_service.booking_timeline(self.db, booking.BookingID)]
        self.assertEqual(events, ["created", "confirmed", "delivery_failed", "delivery_scheduled", "cancelled"])

    def test_unknown_booking_is_not_found(self):
        with self.assertRaises(NotFound):
            booking_service.confirm_booking(self.db, 404, SETTINGS, now=NOW)

    def test_failing_subscriber_is_logged_and_does_not_abort(self):
        def broken(_event):
            raise RuntimeError("mailer down")

        timeline_service.subscribe(broken)
        try:
            with self.assertLogs("rental_management.timeline", level="ERROR"):
                booking = self._create()
        finally:
            timeline_service.unsubscribe(broken)
        self.assertEqual(booking.Status, booking_service.DRAFT)


if __name__ == "__main__":
    unittest.main()
