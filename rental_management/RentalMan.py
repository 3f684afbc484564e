import logging
import os
from datetime import datetime

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from rental_management.config import RentalSettings, load_settings
from rental_management.db.base import Base
from rental_management.db.deps import get_rental_db
from rental_management.db.session import engine_rental
from rental_management.db.transaction import unit_of_work
from rental_management.errors import RentalError
from rental_management.models.rental_models import Booking
from rental_management.schemas.bookings import (
    CancelRequest,
    CreateBookingDto,
    DeliveryStatusRequest,
    ExtensionRequest,
    ResolveReturnCaseRequest,
    ReturnRequest,
    UpdateItemsRequest,
    VersionedRequest,
)
from rental_management.schemas.payments import ChargeRequest, PaymentRequest, RefundRequest
from rental_management.schemas.pricing import PricelistCreateDto, QuotePreviewRequest
from rental_management.schemas.products import CustomerCreate, MaintenanceRequest, ProductUpsert, ReservationRequest
from rental_management.services import (
    booking_service,
    delivery_service,
    inventory_service,
    payment_service,
    pricing_service,
    product_service,
    return_service,
    timeline_service,
)

LOGGER = logging.getLogger("rental_management.api")

app = FastAPI(title="Rental Management")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

SETTINGS = load_settings()

if str(os.environ.get("RENTAL_AUTO_CREATE_SCHEMA", "true")).strip().lower() in {"1", "true", "yes", "on"}:
    Base.metadata.create_all(bind=engine_rental)


def get_settings() -> RentalSettings:
    return SETTINGS


@app.exception_handler(RentalError)
def handle_rental_error(request: Request, exc: RentalError):
    LOGGER.info("%s %s rejected with %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


def _booking_response(db: Session, booking: Booking) -> dict:
    record = payment_service.get_payment_record(db, booking.BookingID, create=False)
    return booking_service.serialize_booking(booking, record)


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/products")
def get_products(
    category: str | None = Query(None),
    activeOnly: bool = Query(False),
    db: Session = Depends(get_rental_db),
):
    return [product_service.serialize_product(p) for p in product_service.list_products(db, category, activeOnly)]


@app.get("/api/products/{product_id}")
def get_product(product_id: int, db: Session = Depends(get_rental_db)):
    return product_service.serialize_product(inventory_service.get_product(db, product_id))


@app.post("/api/products")
def create_product(payload: ProductUpsert, db: Session = Depends(get_rental_db)):
    if not payload.name:
        raise HTTPException(status_code=400, detail="name is required.")
    with unit_of_work(db):
        product = product_service.create_product(db, payload.model_dump(exclude_none=True))
        db.flush()
        timeline_service.log_audit(db, "Product", product.ProductID, "CreateProduct", product.ProductName)
    return product_service.serialize_product(product)


@app.put("/api/products/{product_id}")
def update_product(product_id: int, payload: ProductUpsert, db: Session = Depends(get_rental_db)):
    with inventory_service.product_locks([product_id]), unit_of_work(db):
        product = product_service.update_product(db, product_id, payload.model_dump(exclude_none=True))
        timeline_service.log_audit(db, "Product", product_id, "UpdateProduct", None)
    return product_service.serialize_product(product)


@app.get("/api/products/{product_id}/availability")
def get_product_availability(
    product_id: int,
    startDate: datetime = Query(...),
    endDate: datetime = Query(...),
    quantity: int | None = Query(None),
    db: Session = Depends(get_rental_db),
):
    report = inventory_service.availability_report(db, product_id, startDate, endDate)
    if quantity is not None:
        report["requested"] = quantity
        report["available"] = inventory_service.check_availability(db, product_id, startDate, endDate, quantity)
    return report


@app.post("/api/products/{product_id}/maintenance")
def move_to_maintenance(product_id: int, payload: MaintenanceRequest, db: Session = Depends(get_rental_db)):
    timeline_service.log_audit(db, "Product", product_id, "MoveToMaintenance", f"{payload.quantity} unit(s) {payload.notes or ''}".strip())
    product = inventory_service.move_to_maintenance(db, product_id, payload.quantity)
    return product_service.serialize_product(product)


@app.post("/api/products/{product_id}/maintenance/return")
def return_from_maintenance(product_id: int, payload: MaintenanceRequest, db: Session = Depends(get_rental_db)):
    timeline_service.log_audit(db, "Product", product_id, "ReturnFromMaintenance", f"{payload.quantity} unit(s)")
    product = inventory_service.return_from_maintenance(db, product_id, payload.quantity)
    return product_service.serialize_product(product)


@app.post("/api/reservations")
def create_reservation(payload: ReservationRequest, db: Session = Depends(get_rental_db)):
    reservation = inventory_service.reserve(
        db,
        payload.productID,
        payload.startDate,
        payload.endDate,
        payload.quantity,
    )
    return inventory_service.serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/release")
def release_reservation(reservation_id: int, db: Session = Depends(get_rental_db)):
    return inventory_service.serialize_reservation(inventory_service.release(db, reservation_id))


@app.get("/api/customers")
def get_customers(segment: str | None = Query(None), db: Session = Depends(get_rental_db)):
    return [product_service.serialize_customer(c) for c in product_service.list_customers(db, segment)]


@app.post("/api/customers")
def create_customer(payload: CustomerCreate, db: Session = Depends(get_rental_db)):
    with unit_of_work(db):
        customer = product_service.create_customer(db, payload.model_dump())
    return product_service.serialize_customer(customer)


@app.get("/api/pricelists")
def get_pricelists(db: Session = Depends(get_rental_db)):
    return [pricing_service.serialize_pricelist(p) for p in pricing_service.list_pricelists(db)]


@app.post("/api/pricelists")
def create_pricelist(payload: PricelistCreateDto, db: Session = Depends(get_rental_db)):
    with unit_of_work(db):
        pricelist = pricing_service.create_pricelist(db, payload.model_dump())
        db.flush()
        timeline_service.log_audit(db, "Pricelist", pricelist.PricelistID, "CreatePricelist", pricelist.PricelistName)
    return pricing_service.serialize_pricelist(pricelist)


@app.post("/api/quotes/preview")
def preview_quote(
    payload: QuotePreviewRequest,
    db: Session = Depends(get_rental_db),
    settings: RentalSettings = Depends(get_settings),
):
    return booking_service.quote_preview(
        db,
        payload.startDate,
        payload.endDate,
        [item.model_dump() for item in payload.items],
        settings,
        customer_id=payload.customerID,
        delivery_required=payload.deliveryRequired,
        pickup_required=payload.pickupRequired,
        pricelist_id=payload.pricelistID,
    )


@app.get("/api/bookings")
def get_bookings(
    status: str | None = Query(None),
    customerID: int | None = Query(None),
    db: Session = Depends(get_rental_db),
):
    bookings = booking_service.list_bookings(db, status=status, customer_id=customerID)
    return [_booking_response(db, booking) for booking in bookings]


@app.get("/api/bookings/{booking_id}")
def get_booking(booking_id: int, db: Session = Depends(get_rental_db)):
    return _booking_response(db, booking_service.load_booking(db, booking_id))


@app.post("/api/bookings")
def create_booking(
    payload: CreateBookingDto,
    db: Session = Depends(get_rental_db),
    settings: RentalSettings = Depends(get_settings),
):
    booking = booking_service.create_booking(
        db,
        payload.customerID,
        payload.startDate,
        payload.endDate,
        [item.model_dump() for item in payload.items],
        settings,
        delivery_required=payload.deliveryRequired,
        pickup_required=payload.pickupRequired,
        pricelist_id=payload.pricelistID,
        notes=payload.notes,
        delivery_address=payload.deliveryAddress,
    )
    return _booking_response(db, booking)


@app.put("/api/bookings/{booking_id}/items")
def update_booking_items(
    booking_id: int,
    payload: UpdateItemsRequest,
    db: Session = Depends(get_rental_db),
    settings: RentalSettings = Depends(get_settings),
):
    booking = booking_service.update_items(
        db,
        booking_id,
        [item.model_dump() for item in payload.items],
        settings,
        expected_version=payload.expectedVersion,
    )
    return _booking_response(db, booking)


@app.post("/api/bookings/{booking_id}/confirm")
def confirm_booking(
    booking_id: int,
    payload: VersionedRequest | None = None,
    db: Session = Depends(get_rental_db),
    settings: RentalSettings = Depends(get_settings),
):
    expected = payload.expectedVersion if payload else None
    booking = booking_service.confirm_booking(db, booking_id, settings, expected_version=expected)
    record = payment_service.get_payment_record(db, booking_id, create=False)
    return booking_service.build_confirmation(booking, record)


@app.post("/api/bookings/{booking_id}/start")
def start_booking(
    booking_id: int,
    payload: VersionedRequest | None = None,
    db: Session = Depends(get_rental_db),
    settings: RentalSettings = Depends(get_settings),
):
    expected = payload.expectedVersion if payload else None
    booking = booking_service.start_booking(db, booking_id, settings, expected_version=expected)
    return _booking_response(db, booking)


@app.post("/api/bookings/{booking_id}/return")
def return_booking(
    booking_id: int,
    payload: ReturnRequest,
    db: Session = Depends(get_rental_db),
    settings: RentalSettings = Depends(get_settings),
):
    case = return_service.record_return(
        db,
        booking_id,
        settings,
        returned_at=payload.returnedAt,
        item_conditions=[item.model_dump() for item in payload.items],
        disputed=payload.disputed,
        notes=payload.notes,
    )
    booking = booking_service.load_booking(db, booking_id)
    return {
        "booking": _booking_response(db, booking),
        "returnCase": return_service.serialize_return_case(case) if case is not None else None,
    }


@app.post("/api/bookings/{booking_id}/complete")
def complete_booking(
    booking_id: int,
    payload: VersionedRequest | None = None,
    db: Session = Depends(get_rental_db),
    settings: RentalSettings = Depends(get_settings),
):
    expected = payload.expectedVersion if payload else None
    booking = booking_service.complete_booking(db, booking_id, settings, expected_version=expected)
    return _booking_response(db, booking)


@app.post("/api/bookings/{booking_id}/cancel")
def cancel_booking(booking_id: int, payload: CancelRequest | None = None, db: Session = Depends(get_rental_db)):
    booking = booking_service.cancel_booking(
        db,
        booking_id,
        reason=payload.reason if payload else None,
        expected_version=payload.expectedVersion if payload else None,
    )
    return _booking_response(db, booking)


@app.post("/api/bookings/{booking_id}/extend")
def extend_booking(
    booking_id: int,
    payload: ExtensionRequest,
    db: Session = Depends(get_rental_db),
    settings: RentalSettings = Depends(get_settings),
):
    booking = booking_service.extend_booking(
        db,
        booking_id,
        payload.newEndDate,
        settings,
        expected_version=payload.expectedVersion,
    )
    return _booking_response(db, booking)


@app.get("/api/bookings/{booking_id}/timeline")
def get_booking_timeline(booking_id: int, db: Session = Depends(get_rental_db)):
    booking_service.load_booking(db, booking_id)
    return [timeline_service.serialize_event(e) for e in timeline_service.booking_timeline(db, booking_id)]


@app.get("/api/bookings/{booking_id}/deliveries")
def get_booking_deliveries(booking_id: int, db: Session = Depends(get_rental_db)):
    booking_service.load_booking(db, booking_id)
    return [delivery_service.serialize_delivery(d) for d in delivery_service.booking_deliveries(db, booking_id)]


@app.get("/api/deliveries")
def get_deliveries(
    status: str | None = Query(None),
    deliveryType: str | None = Query(None),
    scheduledFrom: datetime | None = Query(None),
    scheduledTo: datetime | None = Query(None),
    db: Session = Depends(get_rental_db),
):
    deliveries = delivery_service.list_deliveries(db, status, deliveryType, scheduledFrom, scheduledTo)
    return [delivery_service.serialize_delivery(d) for d in deliveries]


@app.post("/api/deliveries/{delivery_id}/status")
def update_delivery_status(delivery_id: int, payload: DeliveryStatusRequest, db: Session = Depends(get_rental_db)):
    delivery = delivery_service.update_status(
        db,
        delivery_id,
        payload.status,
        scheduled_at=payload.scheduledAt,
        vehicle_number=payload.vehicleNumber,
        notes=payload.notes,
    )
    return delivery_service.serialize_delivery(delivery)


@app.get("/api/bookings/{booking_id}/payments")
def get_booking_payments(booking_id: int, db: Session = Depends(get_rental_db)):
    booking_service.load_booking(db, booking_id)
    record = payment_service.get_payment_record(db, booking_id, create=False)
    return payment_service.serialize_payment_record(record, booking_id)


@app.post("/api/bookings/{booking_id}/charges")
def add_booking_charge(booking_id: int, payload: ChargeRequest, db: Session = Depends(get_rental_db)):
    booking_service.load_booking(db, booking_id)
    installment = payment_service.record_charge(db, booking_id, payload.amount, payload.dueDate, payload.label or "charge")
    return payment_service.serialize_installment(installment)


@app.post("/api/bookings/{booking_id}/payments")
def add_booking_payment(booking_id: int, payload: PaymentRequest, db: Session = Depends(get_rental_db)):
    booking_service.load_booking(db, booking_id)
    payment_service.record_payment(
        db,
        booking_id,
        payload.amount,
        method=payload.method,
        timestamp=payload.timestamp,
        advance_credit=payload.advanceCredit,
        gateway_transaction_id=payload.transactionId,
        gateway_status=payload.status,
    )
    record = payment_service.get_payment_record(db, booking_id, create=False)
    return payment_service.serialize_payment_record(record, booking_id)


@app.post("/api/bookings/{booking_id}/refunds")
def add_booking_refund(booking_id: int, payload: RefundRequest, db: Session = Depends(get_rental_db)):
    booking_service.load_booking(db, booking_id)
    payment_service.record_refund(
        db,
        booking_id,
        payload.amount,
        method=payload.method,
        gateway_transaction_id=payload.transactionId,
        gateway_status=payload.status,
    )
    record = payment_service.get_payment_record(db, booking_id, create=False)
    return payment_service.serialize_payment_record(record, booking_id)


@app.get("/api/return-cases/{case_id}")
def get_return_case(case_id: int, db: Session = Depends(get_rental_db)):
    return return_service.serialize_return_case(return_service.get_return_case(db, case_id))


@app.post("/api/return-cases/{case_id}/resolve")
def resolve_return_case(
    case_id: int,
    payload: ResolveReturnCaseRequest,
    db: Session = Depends(get_rental_db),
    settings: RentalSettings = Depends(get_settings),
):
    case = return_service.resolve_return_case(
        db,
        case_id,
        settings,
        payload.resolution,
        additional_charge=payload.additionalCharge,
        credit_amount=payload.creditAmount,
    )
    return return_service.serialize_return_case(case)


@app.get("/api/reports/bookings/summary")
def get_booking_summary(db: Session = Depends(get_rental_db)):
    return booking_service.booking_summary(db)


@app.get("/api/notifications/pending")
def get_pending_notifications(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_rental_db)):
    return [timeline_service.serialize_event(e) for e in timeline_service.pending_events(db, limit)]


@app.post("/api/notifications/{event_id}/ack")
def acknowledge_notification(event_id: int, db: Session = Depends(get_rental_db)):
    with unit_of_work(db):
        event = timeline_service.acknowledge(db, event_id)
    return timeline_service.serialize_event(event)
