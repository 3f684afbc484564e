from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rental_management.db.base import Base


class Product(Base):
    __tablename__ = "Products"

    ProductID = Column(Integer, primary_key=True)
    Sku = Column(String(64), unique=True)
    ProductName = Column(String(255), nullable=False)
    Category = Column(String(100))
    Description = Column(String(1000))
    BaseRate = Column(Numeric(12, 2), nullable=False, default=0)
    RateUnit = Column(String(10), nullable=False, default="day")
    TotalUnits = Column(Integer, nullable=False, default=0)
    AvailableUnits = Column(Integer, nullable=False, default=0)
    ReservedUnits = Column(Integer, nullable=False, default=0)
    MaintenanceUnits = Column(Integer, nullable=False, default=0)
    SecurityDepositPerUnit = Column(Numeric(12, 2), nullable=False, default=0)
    ReplacementCost = Column(Numeric(12, 2))
    IsActive = Column(Boolean, default=True)
    Version = Column(Integer, nullable=False, default=1)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Rates = relationship("ProductRate", back_populates="Product", cascade="all, delete-orphan")
    Reservations = relationship("InventoryReservation", back_populates="Product")
    BookingItems = relationship("BookingItem", back_populates="Product")

    __mapper_args__ = {"version_id_col": Version}


class ProductRate(Base):
    __tablename__ = "ProductRates"
    __table_args__ = (UniqueConstraint("ProductID", "RateUnit", name="UQ_ProductRates_Product_Unit"),)

    ProductRateID = Column(Integer, primary_key=True)
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), nullable=False)
    RateUnit = Column(String(10), nullable=False)
    Rate = Column(Numeric(12, 2), nullable=False)

    Product = relationship("Product", back_populates="Rates")


class Customer(Base):
    __tablename__ = "Customers"

    CustomerID = Column(Integer, primary_key=True)
    CustomerName = Column(String(255), nullable=False)
    Email = Column(String(255))
    Phone = Column(String(50))
    Segment = Column(String(50), default="regular")
    CreatedDate = Column(DateTime, server_default=func.now())

    Bookings = relationship("Booking", back_populates="Customer")


class InventoryReservation(Base):
    __tablename__ = "Reservations"
    __table_args__ = (
        Index("IX_Reservations_Product_Window", "ProductID", "Status", "StartAt", "EndAt"),
    )

    ReservationID = Column(Integer, primary_key=True)
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), nullable=False)
    BookingID = Column(Integer, ForeignKey("Bookings.BookingID"))
    BookingItemID = Column(Integer)
    Quantity = Column(Integer, nullable=False)
    StartAt = Column(DateTime, nullable=False)
    EndAt = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default="active")
    CreatedAt = Column(DateTime, server_default=func.now())
    ReleasedAt = Column(DateTime)

    Product = relationship("Product", back_populates="Reservations")
    Booking = relationship("Booking", back_populates="Reservations")


class Pricelist(Base):
    __tablename__ = "Pricelists"

    PricelistID = Column(Integer, primary_key=True)
    PricelistName = Column(String(255), nullable=False)
    Description = Column(String(1000))
    IsDefault = Column(Boolean, default=False)
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())

    Rules = relationship(
        "PricelistRule",
        back_populates="Pricelist",
        cascade="all, delete-orphan",
        order_by="[PricelistRule.Priority.desc(), PricelistRule.RuleID]",
    )


class PricelistRule(Base):
    __tablename__ = "PricelistRules"

    RuleID = Column(Integer, primary_key=True)
    PricelistID = Column(Integer, ForeignKey("Pricelists.PricelistID"), nullable=False)
    RuleName = Column(String(255))
    Priority = Column(Integer, nullable=False, default=0)
    IsStackable = Column(Boolean, default=False)
    DiscountType = Column(String(20), nullable=False, default="percentage")
    DiscountValue = Column(Numeric(12, 2), nullable=False, default=0)
    CustomerSegment = Column(String(50))
    ProductCategory = Column(String(100))
    ProductID = Column(Integer, ForeignKey("Products.ProductID"))
    MinQuantity = Column(Integer)
    MinOrderAmount = Column(Numeric(12, 2))
    ValidFrom = Column(DateTime)
    ValidTo = Column(DateTime)
    IsActive = Column(Boolean, default=True)

    Pricelist = relationship("Pricelist", back_populates="Rules")


class Booking(Base):
    __tablename__ = "Bookings"

    BookingID = Column(Integer, primary_key=True)
    BookingNumber = Column(String(50), nullable=False, unique=True)
    CustomerID = Column(Integer, ForeignKey("Customers.CustomerID"), nullable=False)
    PricelistID = Column(Integer, ForeignKey("Pricelists.PricelistID"))
    Status = Column(String(20), nullable=False, default="draft")
    StartAt = Column(DateTime, nullable=False)
    EndAt = Column(DateTime, nullable=False)
    DeliveryRequired = Column(Boolean, default=False)
    PickupRequired = Column(Boolean, default=False)
    DeliveryAddress = Column(String(500))
    Subtotal = Column(Numeric(12, 2), default=0)
    DiscountAmount = Column(Numeric(12, 2), default=0)
    TaxAmount = Column(Numeric(12, 2), default=0)
    DeliveryCharges = Column(Numeric(12, 2), default=0)
    SecurityDeposit = Column(Numeric(12, 2), default=0)
    FinalAmount = Column(Numeric(12, 2), default=0)
    LateFees = Column(Numeric(12, 2), default=0)
    DamageCharges = Column(Numeric(12, 2), default=0)
    ActualStart = Column(DateTime)
    ActualReturn = Column(DateTime)
    CancellationReason = Column(String(500))
    Notes = Column(String(1000))
    Version = Column(Integer, nullable=False, default=1)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Customer = relationship("Customer", back_populates="Bookings")
    Pricelist = relationship("Pricelist")
    Items = relationship(
        "BookingItem",
        back_populates="Booking",
        cascade="all, delete-orphan",
        order_by="BookingItem.BookingItemID",
    )
    Reservations = relationship("InventoryReservation", back_populates="Booking")
    PaymentRecord = relationship("PaymentRecord", back_populates="Booking", uselist=False)
    ReturnCases = relationship("ReturnCase", back_populates="Booking", order_by="ReturnCase.ReturnCaseID")
    Events = relationship("BookingEvent", back_populates="Booking", order_by="BookingEvent.EventID")
    Deliveries = relationship("DeliveryRecord", back_populates="Booking", order_by="DeliveryRecord.DeliveryID")

    __mapper_args__ = {"version_id_col": Version}


class BookingItem(Base):
    __tablename__ = "BookingItems"

    BookingItemID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, ForeignKey("Bookings.BookingID"), nullable=False)
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    Duration = Column(Integer, nullable=False, default=1)
    DurationUnit = Column(String(10), nullable=False, default="day")
    UnitRate = Column(Numeric(12, 2), nullable=False, default=0)
    LineTotal = Column(Numeric(12, 2), default=0)
    DiscountAmount = Column(Numeric(12, 2), default=0)
    SecurityDepositPerUnit = Column(Numeric(12, 2), default=0)
    AppliedRules = Column(String(500))

    Booking = relationship("Booking", back_populates="Items")
    Product = relationship("Product", back_populates="BookingItems")


class PaymentRecord(Base):
    __tablename__ = "PaymentRecords"

    PaymentRecordID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, ForeignKey("Bookings.BookingID"), nullable=False, unique=True)
    CreditBalance = Column(Numeric(12, 2), nullable=False, default=0)
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Booking = relationship("Booking", back_populates="PaymentRecord")
    Installments = relationship(
        "Installment",
        back_populates="PaymentRecord",
        cascade="all, delete-orphan",
        order_by="[Installment.DueDate, Installment.InstallmentID]",
    )
    Transactions = relationship(
        "PaymentTransaction",
        back_populates="PaymentRecord",
        order_by="PaymentTransaction.TransactionID",
    )


class Installment(Base):
    __tablename__ = "Installments"

    InstallmentID = Column(Integer, primary_key=True)
    PaymentRecordID = Column(Integer, ForeignKey("PaymentRecords.PaymentRecordID"), nullable=False)
    BookingID = Column(Integer, ForeignKey("Bookings.BookingID"), nullable=False)
    Label = Column(String(100))
    Amount = Column(Numeric(12, 2), nullable=False)
    PaidAmount = Column(Numeric(12, 2), nullable=False, default=0)
    DueDate = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default="pending")
    IsVoided = Column(Boolean, default=False)
    CreatedAt = Column(DateTime, server_default=func.now())
    PaidAt = Column(DateTime)

    PaymentRecord = relationship("PaymentRecord", back_populates="Installments")


class PaymentTransaction(Base):
    __tablename__ = "PaymentTransactions"

    TransactionID = Column(Integer, primary_key=True)
    PaymentRecordID = Column(Integer, ForeignKey("PaymentRecords.PaymentRecordID"), nullable=False)
    BookingID = Column(Integer, ForeignKey("Bookings.BookingID"), nullable=False)
    Kind = Column(String(20), nullable=False, default="payment")
    Method = Column(String(50))
    Amount = Column(Numeric(12, 2), nullable=False)
    AppliedAmount = Column(Numeric(12, 2), default=0)
    CreditedAmount = Column(Numeric(12, 2), default=0)
    GatewayTransactionID = Column(String(100))
    GatewayStatus = Column(String(20))
    IsAdvanceCredit = Column(Boolean, default=False)
    CreatedAt = Column(DateTime, server_default=func.now())

    PaymentRecord = relationship("PaymentRecord", back_populates="Transactions")


class ReturnCase(Base):
    __tablename__ = "ReturnCases"

    ReturnCaseID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, ForeignKey("Bookings.BookingID"), nullable=False)
    Status = Column(String(20), nullable=False, default="open")
    ReturnType = Column(String(20))
    ReturnedAt = Column(DateTime, nullable=False)
    DaysLate = Column(Integer, default=0)
    LateFee = Column(Numeric(12, 2), default=0)
    DamageCharge = Column(Numeric(12, 2), default=0)
    DepositHeld = Column(Numeric(12, 2), default=0)
    DepositRetained = Column(Numeric(12, 2), default=0)
    DepositRefund = Column(Numeric(12, 2), default=0)
    Receivable = Column(Numeric(12, 2), default=0)
    EarlyReturnRefund = Column(Numeric(12, 2), default=0)
    IsDisputed = Column(Boolean, default=False)
    Resolution = Column(String(1000))
    Notes = Column(String(1000))
    CreatedAt = Column(DateTime, server_default=func.now())
    ResolvedAt = Column(DateTime)

    Booking = relationship("Booking", back_populates="ReturnCases")
    Items = relationship("ReturnCaseItem", back_populates="ReturnCase", cascade="all, delete-orphan")


class ReturnCaseItem(Base):
    __tablename__ = "ReturnCaseItems"

    ReturnCaseItemID = Column(Integer, primary_key=True)
    ReturnCaseID = Column(Integer, ForeignKey("ReturnCases.ReturnCaseID"), nullable=False)
    BookingItemID = Column(Integer, ForeignKey("BookingItems.BookingItemID"))
    ProductID = Column(Integer, ForeignKey("Products.ProductID"), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    Condition = Column(String(20), nullable=False)
    AssessedCost = Column(Numeric(12, 2), default=0)
    ChargedAmount = Column(Numeric(12, 2), default=0)
    ExcessAmount = Column(Numeric(12, 2), default=0)
    Notes = Column(String(500))

    ReturnCase = relationship("ReturnCase", back_populates="Items")


class DeliveryRecord(Base):
    __tablename__ = "DeliveryRecords"
    __table_args__ = (Index("IX_DeliveryRecords_Status_Scheduled", "Status", "ScheduledAt"),)

    DeliveryID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, ForeignKey("Bookings.BookingID"), nullable=False, index=True)
    DeliveryType = Column(String(20), nullable=False)
    Status = Column(String(20), nullable=False, default="scheduled")
    ScheduledAt = Column(DateTime, nullable=False)
    ActualAt = Column(DateTime)
    Address = Column(String(500))
    ContactPerson = Column(String(200))
    ContactPhone = Column(String(50))
    VehicleNumber = Column(String(100))
    Notes = Column(String(1000))
    CreatedAt = Column(DateTime, server_default=func.now())
    UpdatedAt = Column(DateTime, server_default=func.now())

    Booking = relationship("Booking", back_populates="Deliveries")


class BookingEvent(Base):
    __tablename__ = "BookingEvents"

    EventID = Column(Integer, primary_key=True)
    BookingID = Column(Integer, ForeignKey("Bookings.BookingID"), nullable=False)
    EventType = Column(String(50), nullable=False)
    Description = Column(String(2000))
    CreatedAt = Column(DateTime, nullable=False)
    DispatchedAt = Column(DateTime)

    Booking = relationship("Booking", back_populates="Events")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
